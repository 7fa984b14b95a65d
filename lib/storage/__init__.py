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


"""Storage access for the migration code.

L{StorageManager} is the single entry point the migration controller uses
for volumes: it resolves volume ids to backends (see L{STORAGE_MAP}),
answers capability questions and runs the storage tool for data moving
operations.

"""

import logging
import re

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import serializer
from vmmigrate import utils
from vmmigrate.storage import plugins


STORAGE_MAP = {
  constants.ST_DIR: plugins.DirStorage,
  constants.ST_NFS: plugins.NfsStorage,
  constants.ST_LVM: plugins.LvmStorage,
  constants.ST_LVMTHIN: plugins.LvmThinStorage,
  constants.ST_ZFSPOOL: plugins.ZfsPoolStorage,
  constants.ST_RBD: plugins.RbdStorage,
}
"""Map storage types to backend classes.""" # pylint: disable=W0105

_VOLID_RE = re.compile(r"^([a-z][a-z0-9\-_.]*[a-z0-9]):(.+)$", re.I)
_IMPORTED_RE = re.compile(r"successfully imported '([^']+)'")
_ALLOCATED_RE = re.compile(r"successfully created '([^']+)'")


def ParseVolumeId(volid):
  """Splits a volume id into storage id and volume name.

  @rtype: tuple
  @return: (storeid, volname)
  @raise errors.StorageError: for malformed volume ids

  """
  match = _VOLID_RE.match(volid)
  if not match:
    raise errors.StorageError("unable to parse volume ID '%s'" % volid)
  return match.groups()


def IsPathVolume(volid):
  """Whether a drive references a local file or device by absolute path.

  """
  return volid.startswith("/")


def ComputeBandwidthLimit(operation, limit_sets, global_limits,
                          override=None):
  """Computes the effective bandwidth limit of an operation.

  Each storage involved may carry its own limits; the lowest applicable one
  wins. When a storage has no limit for the operation (nor a default one),
  or no storage is involved, the cluster-wide limits apply as well. An
  explicit override is lowered by the applicable limits too.

  @type operation: string
  @param operation: one of the C{constants.BWLIMIT_*} classes
  @type limit_sets: list
  @param limit_sets: the per-storage limit dicts (or None) involved
  @type global_limits: dict or None
  @param global_limits: cluster-wide limits
  @param override: limit requested by the caller, if any
  @rtype: int or None
  @return: limit in KiB/s, or None for unlimited

  """
  state = {
    "limit": override,
    "use_global": False,
    }

  def _Apply(limits):
    if limits:
      limit = limits.get(operation, limits.get(constants.BWLIMIT_DEFAULT))
      if limit is not None:
        if not state["limit"] or limit < state["limit"]:
          state["limit"] = limit
        return
    state["use_global"] = True

  if limit_sets:
    for limits in limit_sets:
      _Apply(limits)
  else:
    state["use_global"] = True

  if state["use_global"]:
    _Apply(global_limits)

  return state["limit"]


class StorageManager(object):
  """Access to the volumes of the cluster storages.

  """
  def __init__(self, cluster_cfg, node, _run_fn=utils.RunCmd):
    """Initializes this class.

    @type cluster_cfg: L{vmmigrate.config.ClusterConfig}
    @param cluster_cfg: the cluster settings holding the storage definitions
    @type node: string
    @param node: the local node name

    """
    self.cluster_cfg = cluster_cfg
    self.node = node
    self._run_fn = _run_fn
    self._backends = {}

  def GetBackend(self, storeid):
    """Returns the backend of a storage.

    @rtype: L{base.StorageBackend}
    @raise errors.ConfigurationError: for undefined storages or unknown types

    """
    backend = self._backends.get(storeid)
    if backend is None:
      scfg = self.cluster_cfg.GetStorage(storeid)
      stype = scfg.get("type")
      if stype not in STORAGE_MAP:
        raise errors.ConfigurationError("Storage '%s' has unknown type '%s'" %
                                        (storeid, stype))
      backend = self._backends[storeid] = STORAGE_MAP[stype](storeid, scfg)
    return backend

  def GetStorageIds(self):
    return self.cluster_cfg.GetStorageIds()

  def ParseVolname(self, volid):
    (storeid, volname) = ParseVolumeId(volid)
    return self.GetBackend(storeid).ParseVolname(volname)

  def IsShared(self, storeid):
    return self.GetBackend(storeid).IsShared()

  def CheckNode(self, storeid, node=None):
    """Checks that a storage is enabled and available on a node.

    @raise errors.OpPrereqError: if it is not

    """
    if node is None:
      node = self.node
    backend = self.GetBackend(storeid)
    if not backend.IsEnabled():
      raise errors.OpPrereqError("storage '%s' is disabled" % storeid,
                                 errors.ECODE_STATE)
    if not backend.IsAvailableOn(node):
      raise errors.OpPrereqError("storage '%s' is not available on node '%s'" %
                                 (storeid, node), errors.ECODE_ENVIRON)
    return backend

  def SupportsFeature(self, volid, feature, snapname=None):
    (storeid, volname) = ParseVolumeId(volid)
    return self.GetBackend(storeid).SupportsFeature(feature, volname,
                                                    snapname=snapname)

  def GetBandwidthLimit(self, operation, storeids, override=None):
    """Returns the bandwidth limit for an operation between storages.

    @rtype: int or None
    @return: limit in KiB/s, or None for unlimited

    """
    limit_sets = [self.GetBackend(sid).GetBandwidthLimits()
                  for sid in storeids]
    return ComputeBandwidthLimit(operation, limit_sets,
                                 self.cluster_cfg.GetBandwidthLimits(),
                                 override=override)

  def _RunTool(self, args, errmsg, **kwargs):
    result = self._run_fn([constants.STORAGE_TOOL] + args, **kwargs)
    if result.failed:
      raise errors.StorageError("%s: %s" % (errmsg, result.output.strip() or
                                            result.fail_reason))
    return result

  def ResolvePath(self, volid):
    """Returns the path of a volume on this node.

    """
    if IsPathVolume(volid):
      return volid
    (storeid, volname) = ParseVolumeId(volid)
    return self.GetBackend(storeid).GetPath(volname)

  def ListGuestVolumes(self, storeid, guest_id=None):
    """Lists the guest images found on a storage.

    @rtype: list of dict
    @return: dicts with C{volid}, C{format}, C{size} and C{vmid}

    """
    args = ["list", storeid, "--content", "images",
            "--output-format", "json"]
    if guest_id is not None:
      args.extend(["--vmid", str(guest_id)])
    result = self._RunTool(args, "failed to list volumes of storage '%s'" %
                           storeid)
    try:
      volumes = serializer.LoadJson(result.stdout or "[]")
    except ValueError as err:
      raise errors.StorageError("unexpected volume list of storage '%s': %s" %
                                (storeid, err))
    return volumes

  def IsBaseAndUsed(self, volid):
    """Checks whether a base volume is used by linked clones.

    """
    (storeid, volname) = ParseVolumeId(volid)
    backend = self.GetBackend(storeid)
    vol = backend.ParseVolname(volname)
    if not vol.is_base:
      return False

    for info in self.ListGuestVolumes(storeid):
      other = backend.ParseVolname(ParseVolumeId(info["volid"])[1])
      if other.basename == vol.name:
        return True
    return False

  def Allocate(self, storeid, guest_id, fmt, name, size_kib):
    """Allocates a new volume.

    @rtype: string
    @return: the new volume id

    """
    args = ["alloc", storeid, str(guest_id), name or "", "%dK" % size_kib,
            "--format", fmt]
    result = self._RunTool(args, "failed to allocate volume on '%s'" % storeid)
    match = _ALLOCATED_RE.search(result.output)
    if not match:
      raise errors.StorageError("unexpected output allocating volume on '%s':"
                                " %s" % (storeid, result.output))
    return match.group(1)

  def Deactivate(self, volids):
    """Deactivates volumes on this node.

    """
    for volid in volids:
      if IsPathVolume(volid):
        continue
      (storeid, volname) = ParseVolumeId(volid)
      self.GetBackend(storeid).Deactivate(volname, self._run_fn)

  def Free(self, volid):
    self._RunTool(["free", volid], "failed to free volume '%s'" % volid)

  def CopyTo(self, volid, target_ssh, target_storeid, rate_limit=None,
             with_snapshots=False, allow_rename=False, log_fn=None):
    """Copies a volume to a storage on another node.

    The volume is exported by the local storage tool and imported by the
    remote one, through ssh.

    @type target_ssh: L{vmmigrate.ssh.SshRunner}
    @param target_ssh: runner for the destination node
    @type rate_limit: int or None
    @param rate_limit: bytes per second
    @type with_snapshots: bool
    @param with_snapshots: whether to copy internal snapshots as well
    @type allow_rename: bool
    @param allow_rename: whether the destination may pick another name if
        the volume name is taken
    @type log_fn: callable
    @param log_fn: called with each output line of the transfer
    @rtype: string
    @return: the destination volume id

    """
    (storeid, volname) = ParseVolumeId(volid)
    source = self.GetBackend(storeid)
    target = self.GetBackend(target_storeid)

    formats = [fmt for fmt in source.GetExportFormats(volname, with_snapshots)
               if fmt in target.GetImportFormats(volname, with_snapshots)]
    if not formats:
      raise errors.StorageError("could not find common export/import format"
                                " for '%s' to '%s'" % (volid, target_storeid))
    fmt = formats[0]

    target_volid = "%s:%s" % (target_storeid, volname)
    snap_flag = "%d" % int(bool(with_snapshots))
    export_cmd = [constants.STORAGE_TOOL, "export", volid, fmt, "-",
                  "-with-snapshots", snap_flag]
    import_cmd = [constants.STORAGE_TOOL, "import", target_volid, fmt, "-",
                  "-with-snapshots", snap_flag,
                  "-allow-rename", "%d" % int(bool(allow_rename))]

    stages = [utils.ShellQuoteArgs(export_cmd)]
    if rate_limit:
      stages.append(utils.ShellQuoteArgs([constants.CSTREAM, "-t",
                                          str(rate_limit)]))
    stages.append(utils.ShellQuoteArgs(target_ssh.BuildCmd(import_cmd)))
    pipeline = " | ".join(stages)

    logging.info("Copying volume %s to %s (format %s)", volid,
                 target_storeid, fmt)
    result = self._run_fn(["/bin/bash", "-o", "pipefail", "-c", pipeline],
                          output_fn=log_fn, error_fn=log_fn)
    if result.failed:
      raise errors.StorageError("command '%s' failed: %s" %
                                (pipeline, result.fail_reason))

    match = _IMPORTED_RE.search(result.output)
    if match:
      return match.group(1)
    return target_volid
