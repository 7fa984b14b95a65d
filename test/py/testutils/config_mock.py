#
#

# Copyright (C) 2026 the vmmigrate authors
# All rights reserved.
#
# Redistribution and use in source and binary forms, with or without
# modification, are permitted provided that the following conditions are
# met:
#
# 1. Redistributions of source code must retain the above copyright notice,
# this list of conditions and the following disclaimer.
#
# 2. Redistributions in binary form must reproduce the above copyright
# notice, this list of conditions and the following disclaimer in the
# documentation and/or other materials provided with the distribution.
#
# THIS SOFTWARE IS PROVIDED BY THE COPYRIGHT HOLDERS AND CONTRIBUTORS "AS
# IS" AND ANY EXPRESS OR IMPLIED WARRANTIES, INCLUDING, BUT NOT LIMITED
# TO, THE IMPLIED WARRANTIES OF MERCHANTABILITY AND FITNESS FOR A PARTICULAR
# PURPOSE ARE DISCLAIMED. IN NO EVENT SHALL THE COPYRIGHT HOLDER OR
# CONTRIBUTORS BE LIABLE FOR ANY DIRECT, INDIRECT, INCIDENTAL, SPECIAL,
# EXEMPLARY, OR CONSEQUENTIAL DAMAGES (INCLUDING, BUT NOT LIMITED TO,
# PROCUREMENT OF SUBSTITUTE GOODS OR SERVICES; LOSS OF USE, DATA, OR
# PROFITS; OR BUSINESS INTERRUPTION) HOWEVER CAUSED AND ON ANY THEORY OF
# LIABILITY, WHETHER IN CONTRACT, STRICT LIABILITY, OR TORT (INCLUDING
# NEGLIGENCE OR OTHERWISE) ARISING IN ANY WAY OUT OF THE USE OF THIS
# SOFTWARE, EVEN IF ADVISED OF THE POSSIBILITY OF SUCH DAMAGE.


"""Support for mocking the cluster configuration"""

import os

from vmmigrate import config
from vmmigrate import constants
from vmmigrate import serializer
from vmmigrate import utils

import testutils


def MakeClusterData(storages=None, replication=None, bwlimit=None):
  """Returns cluster settings with two nodes and the given storages.

  """
  if storages is None:
    storages = {
      "local": {"type": constants.ST_DIR, "path": "/var/lib/vz"},
      "ceph": {"type": constants.ST_RBD, "pool": "rbd"},
      }
  data = {
    "nodes": {
      "node1": {"address": "10.0.0.1"},
      "node2": {"address": "10.0.0.2",
                "networks": {"10.1.0.0/24": "10.1.0.2"}},
      },
    "storages": storages,
    }
  if replication is not None:
    data["replication"] = replication
  if bwlimit is not None:
    data["bwlimit"] = bwlimit
  return data


class ConfigMock(object):
  """Cluster settings and guest configs inside a temporary directory.

  """
  def __init__(self, tmpdir, **kwargs):
    self.tmpdir = str(tmpdir)
    filename = os.path.join(self.tmpdir, "cluster.json")
    utils.WriteFile(filename,
                    serializer.DumpJson(MakeClusterData(**kwargs)))
    self.cluster = config.ClusterConfig.Load(filename)
    self.store = config.GuestConfigStore(_file_fn=self._GuestFile,
                                         _lock_fn=self._LockFile)

  def _GuestFile(self, node, guest_id):
    return os.path.join(self.tmpdir, "nodes", node, "%s.conf" % guest_id)

  def _LockFile(self, guest_id):
    return os.path.join(self.tmpdir, "lock", "lock-%s.conf" % guest_id)

  def AddGuest(self, node, guest_id, data):
    utils.WriteFile(self._GuestFile(node, guest_id),
                    serializer.DumpJson(data), mkdir=True)

  def GuestExists(self, node, guest_id):
    return self.store.Exists(node, guest_id)

  def LoadGuest(self, node, guest_id):
    return self.store.Load(node, guest_id)


class FakeStorageTool(object):
  """Answers the storage tool commands run by L{storage.StorageManager}.

  @ivar volumes: storage id to the list of volume dicts it holds
  @ivar fail: command words (e.g. C{free}) that fail

  """
  def __init__(self, volumes=None):
    self.volumes = volumes or {}
    self.commands = []
    self.fail = set()

  def __call__(self, cmd, **kwargs):
    self.commands.append(list(cmd))
    if cmd[0] == constants.STORAGE_TOOL:
      if cmd[1] in self.fail:
        return testutils.MakeResult(cmd, "%s failed" % cmd[1], exit_code=1)
      if cmd[1] == "list":
        vmid = None
        if "--vmid" in cmd:
          vmid = cmd[cmd.index("--vmid") + 1]
        vols = [vol for vol in self.volumes.get(cmd[2], [])
                if vmid is None or str(vol.get("vmid")) == vmid]
        return testutils.MakeResult(cmd, serializer.DumpJson(vols))
      if cmd[1] == "free":
        for vols in self.volumes.values():
          vols[:] = [vol for vol in vols if vol["volid"] != cmd[2]]
    elif cmd[0] == "/bin/bash" and "copy" in self.fail:
      return testutils.MakeResult(cmd, "broken pipe", exit_code=1)
    return testutils.MakeResult(cmd)

  def GetCommands(self, *prefix):
    return [cmd for cmd in self.commands
            if tuple(cmd[:len(prefix)]) == prefix]

  def GetCopies(self):
    """Returns the copy pipelines run so far.

    """
    return [cmd[-1] for cmd in self.commands if cmd[0] == "/bin/bash"]
