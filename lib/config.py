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


"""Configuration management for vmmigrate.

This module provides access to the cluster-wide settings and to the
per-node guest configurations stored in the shared cluster filesystem.

"""

import logging
import os

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import objects
from vmmigrate import pathutils
from vmmigrate import serializer
from vmmigrate import utils


def ParseIdMap(value):
  """Parses a mapping option like C{src:dst,src2:dst2}.

  A single entry without a colon is the default target for every source.

  @type value: string or None
  @rtype: dict
  @return: dict with the explicit C{entries} and the C{default} target

  """
  result = {
    "entries": {},
    "default": None,
    }
  if not value:
    return result

  for part in value.split(","):
    part = part.strip()
    if not part:
      continue
    if ":" not in part:
      if result["default"] is not None:
        raise errors.OpPrereqError("Multiple default targets in '%s'" % value,
                                   errors.ECODE_INVAL)
      result["default"] = part
      continue
    (src, dst) = part.split(":", 1)
    if not src or not dst:
      raise errors.OpPrereqError("Invalid mapping entry '%s'" % part,
                                 errors.ECODE_INVAL)
    if src in result["entries"]:
      raise errors.OpPrereqError("Duplicate mapping for '%s'" % src,
                                 errors.ECODE_INVAL)
    result["entries"][src] = dst

  return result


def MapId(idmap, source):
  """Looks up the target of a source id in a parsed map.

  Unmapped sources keep their own id.

  """
  if idmap is None:
    return source
  if source in idmap["entries"]:
    return idmap["entries"][source]
  if idmap["default"] is not None:
    return idmap["default"]
  return source


def FormatIdMap(idmap):
  """Formats a parsed map back into its option form.

  @rtype: string or None
  @return: the option string, or None for an empty map

  """
  if not idmap:
    return None
  parts = ["%s:%s" % (src, idmap["entries"][src])
           for src in sorted(idmap["entries"])]
  if idmap["default"] is not None:
    parts.append(idmap["default"])
  return ",".join(parts) or None


class ClusterConfig(object):
  """Cluster-wide settings.

  """
  def __init__(self, data=None, filename=None):
    if data is None:
      data = {}
    self._data = data
    self._filename = filename

  @classmethod
  def Load(cls, filename=pathutils.CLUSTER_CONF_FILE):
    """Loads the cluster settings from a JSON file.

    @raise errors.ConfigurationError: if the file cannot be read or parsed

    """
    try:
      data = serializer.LoadJson(utils.ReadFile(filename))
    except EnvironmentError as err:
      raise errors.ConfigurationError("Can't read cluster configuration %s:"
                                      " %s" % (filename, err))
    except ValueError as err:
      raise errors.ConfigurationError("Can't parse cluster configuration %s:"
                                      " %s" % (filename, err))
    if not isinstance(data, dict):
      raise errors.ConfigurationError("Cluster configuration %s is not a"
                                      " dict" % filename)
    return cls(data, filename=filename)

  def Save(self):
    """Writes the settings back to the file they were loaded from.

    """
    if not self._filename:
      raise errors.ProgrammerError("Cluster configuration was not loaded"
                                   " from a file")
    utils.WriteFile(self._filename,
                    serializer.DumpJson(self._data, indent=1))

  def ToDict(self):
    return self._data

  def GetNodeNames(self):
    return sorted(self._data.get("nodes", {}))

  def GetNodeAddress(self, node, network=None):
    """Returns the address of a node, optionally inside a network.

    @type network: string or None
    @param network: CIDR of the network to use, as configured for the node

    """
    try:
      info = self._data["nodes"][node]
    except KeyError:
      raise errors.OpPrereqError("Unknown node '%s'" % node,
                                 errors.ECODE_NOENT)

    if network:
      address = info.get("networks", {}).get(network)
      if address is None:
        raise errors.OpPrereqError("Node %s has no address in migration"
                                   " network %s" % (node, network),
                                   errors.ECODE_ENVIRON)
      return address

    return info.get("address", node)

  def GetMigrationType(self):
    return self._data.get("migration", {}).get("type",
                                               constants.MIGRATION_TYPE_SECURE)

  def GetMigrationNetwork(self):
    return self._data.get("migration", {}).get("network")

  def GetBandwidthLimits(self):
    """Returns the cluster-wide bandwidth limits in KiB/s per class.

    """
    return dict(self._data.get("bwlimit", {}))

  def GetStorageIds(self):
    return sorted(self._data.get("storages", {}))

  def GetStorage(self, storeid):
    """Returns the definition of a storage.

    @raise errors.ConfigurationError: for undefined storages

    """
    try:
      return self._data["storages"][storeid]
    except KeyError:
      raise errors.ConfigurationError("Storage '%s' does not exist" % storeid)

  def GetReplicationJobs(self, guest_id):
    """Returns the replication jobs of a guest.

    @rtype: list of dict
    @return: job definitions with C{id}, C{guest}, C{target} and optionally
        C{remove_job}

    """
    return [job for job in self._data.get("replication", [])
            if str(job.get("guest")) == str(guest_id)]

  def FindReplicationJob(self, guest_id, target):
    """Returns the replication job of a guest towards a node, if any.

    """
    for job in self.GetReplicationJobs(guest_id):
      if job.get("target") == target:
        return job
    return None

  def SwitchReplicationTarget(self, guest_id, old_target, new_target):
    """Points the replication jobs of a moved guest back to its old node.

    Jobs that replicated to the node the guest now runs on replicate to
    the node it came from.

    @rtype: list
    @return: the ids of the changed jobs

    """
    changed = []
    for job in self.GetReplicationJobs(guest_id):
      if job.get("target") == old_target:
        job["target"] = new_target
        changed.append(job["id"])
    if changed:
      self.Save()
    return changed


class GuestConfigStore(object):
  """Access to the guest configurations in the cluster filesystem.

  """
  def __init__(self, _file_fn=pathutils.GetGuestConfigFile,
               _lock_fn=pathutils.GetGuestLockFile):
    self._file_fn = _file_fn
    self._lock_fn = _lock_fn

  def GetFilename(self, node, guest_id):
    return self._file_fn(node, guest_id)

  def Exists(self, node, guest_id):
    return os.path.exists(self.GetFilename(node, guest_id))

  def Load(self, node, guest_id):
    """Loads the configuration of a guest owned by a node.

    @rtype: L{objects.GuestConfig}
    @raise errors.ConfigurationError: if the config does not exist or is
        malformed

    """
    filename = self.GetFilename(node, guest_id)
    try:
      data = serializer.LoadJson(utils.ReadFile(filename))
    except EnvironmentError as err:
      raise errors.ConfigurationError("Configuration file for guest %s on"
                                      " node %s can't be read: %s" %
                                      (guest_id, node, err))
    except ValueError as err:
      raise errors.ConfigurationError("Configuration file for guest %s is"
                                      " malformed: %s" % (guest_id, err))

    return objects.GuestConfig.FromDict(guest_id, data, node=node)

  def Write(self, config):
    """Writes a guest configuration atomically.

    @raise errors.OpExecError: if the file can't be written

    """
    filename = self.GetFilename(config.node, config.guest_id)
    try:
      utils.WriteFile(filename,
                      serializer.DumpJson(config.ToDict(), indent=1),
                      mkdir=True)
    except EnvironmentError as err:
      raise errors.OpExecError("Failed to write configuration of guest %s:"
                               " %s" % (config.guest_id, err))

  @staticmethod
  def CheckLock(config):
    """Raises L{errors.LockError} if the config carries a lock.

    """
    if config.lock:
      raise errors.LockError("Guest %s is locked (%s)" %
                             (config.guest_id, config.lock))

  def SetLock(self, node, guest_id, lock):
    """Sets the lock value of a guest config.

    """
    config = self.Load(node, guest_id)
    self.CheckLock(config)
    config["lock"] = lock
    self.Write(config)
    return config

  def ClearLock(self, node, guest_id):
    """Removes any lock value from a guest config.

    """
    config = self.Load(node, guest_id)
    if config.pop("lock") is not None:
      self.Write(config)
    return config

  def MoveToNode(self, config, node):
    """Transfers ownership of a guest config to another node.

    The rename inside the shared cluster filesystem is atomic, so the guest
    is owned by exactly one node at any time.

    """
    old = self.GetFilename(config.node, config.guest_id)
    new = self.GetFilename(node, config.guest_id)
    logging.debug("Moving guest config %s to %s", old, new)
    try:
      utils.RenameFile(old, new, mkdir=True)
    except EnvironmentError as err:
      raise errors.OpExecError("Failed to move config to node '%s' - rename"
                               " failed: %s" % (node, err))
    config.node = node

  def LockGuest(self, guest_id, timeout=10):
    """Acquires the local lock serializing changes to a guest config.

    @rtype: L{utils.FileLock}
    @return: the held lock, to be closed by the caller

    """
    filename = self._lock_fn(guest_id)
    dirname = os.path.dirname(filename)
    if not os.path.isdir(dirname):
      os.makedirs(dirname)
    lock = utils.FileLock.Open(filename)
    try:
      lock.Exclusive(blocking=True, timeout=timeout)
    except errors.LockError:
      lock.Close()
      raise
    return lock
