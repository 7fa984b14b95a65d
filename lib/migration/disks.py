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


"""Inventory and copy of the local disks of a guest.

"""

import re
import time

from vmmigrate import config
from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import objects
from vmmigrate import storage
from vmmigrate.migration import base


_GENERATED_VOLUME_RE = re.compile(r"vm-\d+-cloudinit")
_INTERRUPTED_MSG = "interrupted by signal"


class _VolumeRefs(object):
  """How a volume is referenced by a guest configuration.

  """
  def __init__(self, volid):
    self.volid = volid
    self.in_config = False
    self.in_snapshots = set()
    self.is_unused = False
    self.is_vmstate = False
    self.cdrom = False
    self.shared = False
    self.drivename = None


def CollectVolumeRefs(conf):
  """Collects all volumes referenced by a guest config and its snapshots.

  @type conf: L{objects.GuestConfig}
  @rtype: dict
  @return: volume id to L{_VolumeRefs}

  """
  refs = {}

  def _Get(volid):
    if volid not in refs:
      refs[volid] = _VolumeRefs(volid)
    return refs[volid]

  def _Scan(section, snapname):
    for drive in conf.IterDrives(include_unused=True, section=section):
      if drive.file == "none" and not drive.IsCdrom():
        continue
      ref = _Get(drive.file)
      if snapname is None:
        if objects.IsUnusedKey(drive.key):
          ref.is_unused = True
        else:
          ref.in_config = True
          ref.drivename = drive.key
      else:
        ref.in_snapshots.add(snapname)
      ref.cdrom = ref.cdrom or drive.IsCdrom()
      ref.shared = ref.shared or drive.IsShared()

    vmstate = (section or conf.data).get("vmstate")
    if vmstate:
      ref = _Get(vmstate)
      ref.is_vmstate = True
      if snapname is None:
        ref.in_config = True
      else:
        ref.in_snapshots.add(snapname)

  _Scan(None, None)
  for (snapname, section) in sorted(conf.snapshots.items()):
    _Scan(section, snapname)

  return refs


def GetGuestVolumes(conf):
  """Returns the storage volumes used by a guest and its snapshots.

  Local files, devices and empty cdrom drives are left out.

  """
  return [volid for volid in sorted(CollectVolumeRefs(conf))
          if volid not in ("none", "cdrom") and
          not storage.IsPathVolume(volid)]


class StorageSyncCoordinator(object):
  """Copies the local disks of a guest to the destination.

  The results are recorded in the migration job: C{local_volumes} holds the
  inventory, C{volumes} the volumes copied while the guest was stopped,
  C{online_local_volumes} those left for the block-mirror and
  C{volume_map} the destination volume of every copied volume.

  """
  def __init__(self, job, storage_mgr, replication, _time_fn=time.time):
    """Initializes this class.

    @type job: L{base.MigrationJob}
    @type storage_mgr: L{storage.StorageManager}
    @type replication: L{vmmigrate.migration.replication.ReplicationBridge}

    """
    self.job = job
    self._storage = storage_mgr
    self._replication = replication
    self._time_fn = _time_fn

  def _MapStorage(self, storeid):
    return config.MapId(self.job.storage_map, storeid)

  def _ListStorageVolumes(self, local_volumes):
    """Adds the guest volumes found on local storages to the inventory.

    This finds volumes no longer referenced by the configuration.

    """
    job = self.job
    for storeid in self._storage.GetStorageIds():
      backend = self._storage.GetBackend(storeid)
      if backend.IsShared():
        continue
      if not (backend.IsEnabled() and backend.IsAvailableOn(job.source)):
        continue

      volumes = self._storage.ListGuestVolumes(storeid, job.guest_id)
      if not volumes:
        continue

      target_sid = self._MapStorage(storeid)
      target = self._storage.CheckNode(target_sid, job.target)
      if target_sid != storeid and not target.HasContent("images"):
        raise errors.OpPrereqError("content type 'images' is not available on"
                                   " storage '%s'" % target_sid,
                                   errors.ECODE_ENVIRON)

      for info in volumes:
        fmt = info.get("format")
        local_volumes[info["volid"]] = objects.VolumeMigrationEntry(
          volid=info["volid"], ref=constants.VOLUME_REF_STORAGE,
          snapshots=fmt in constants.IMAGE_FORMATS_WITH_SNAPSHOTS,
          is_vmstate=False, format=fmt, target_storage=target_sid)

  def _CheckVolume(self, local_volumes, ref):
    """Classifies one referenced volume.

    @return: an error message for problems not tied to the volume, or None
    @raise errors.GenericError: if the volume can't be migrated

    """
    job = self.job
    volid = ref.volid

    if storage.IsPathVolume(volid):
      if ref.shared:
        return None
      local_volumes[volid] = objects.VolumeMigrationEntry(
        volid=volid, ref=constants.VOLUME_REF_CONFIG)
      raise errors.OpPrereqError("local file/device", errors.ECODE_STATE)

    if ref.cdrom:
      if volid == "cdrom":
        msg = "can't migrate local cdrom drive"
        if ref.in_snapshots and not ref.in_config:
          msg += (" (referenced in snapshot - %s)" %
                  ", ".join(sorted(ref.in_snapshots)))
        return msg
      if volid == "none":
        return None

    (storeid, volname) = storage.ParseVolumeId(volid)
    target_sid = self._MapStorage(storeid)
    backend = self._storage.CheckNode(storeid, job.source)
    self._storage.CheckNode(target_sid, job.target)

    if backend.IsShared():
      return None

    entry = local_volumes.get(volid)
    if entry is None:
      entry = local_volumes[volid] = objects.VolumeMigrationEntry(
        volid=volid, snapshots=False, target_storage=target_sid)

    if ref.is_unused:
      entry.ref = constants.VOLUME_REF_STORAGE
    elif ref.in_config:
      entry.ref = constants.VOLUME_REF_CONFIG
    else:
      entry.ref = constants.VOLUME_REF_SNAPSHOT
    entry.is_vmstate = ref.is_vmstate
    entry.drivename = ref.drivename

    if ref.cdrom:
      if _GENERATED_VOLUME_RE.search(volid):
        entry.ref = constants.VOLUME_REF_GENERATED
        return None
      raise errors.OpPrereqError("local cdrom image", errors.ECODE_STATE)

    owner = backend.ParseVolname(volname).owner
    if not owner or str(owner) != str(job.guest_id):
      raise errors.OpPrereqError("owned by other VM (owner = VM %s)" % owner,
                                 errors.ECODE_STATE)

    if ref.is_vmstate:
      return None

    if ref.in_snapshots:
      entry.snapshots = True
      if job.running:
        raise errors.OpPrereqError("online storage migration not possible if"
                                   " snapshot exists", errors.ECODE_STATE)
      if not backend.CanMigrateSnapshots(volname):
        raise errors.OpPrereqError("non-migratable snapshot exists",
                                   errors.ECODE_STATE)

    if self._storage.IsBaseAndUsed(volid):
      raise errors.OpPrereqError("referenced by linked clone(s)",
                                 errors.ECODE_STATE)

    return None

  def Inventory(self):
    """Finds and classifies the local volumes of the guest.

    All problems are collected first and reported together.

    @rtype: dict
    @return: volume id to L{objects.VolumeMigrationEntry}
    @raise errors.DiskSyncError: if any volume can't be migrated

    """
    job = self.job
    local_volumes = {}
    volume_errors = {}
    other_errors = []

    self._ListStorageVolumes(local_volumes)

    replicatable = {}
    if job.replication_job:
      replicatable = self._replication.GetReplicatableVolumes(job.config)

    refs = CollectVolumeRefs(job.config)
    for volid in sorted(refs):
      try:
        msg = self._CheckVolume(local_volumes, refs[volid])
      except errors.GenericError as err:
        volume_errors[volid] = errors.FormatError(err)
        continue
      if msg:
        other_errors.append(msg)

    for volid in sorted(local_volumes):
      kind = "local"
      if volid in replicatable:
        kind = "local, replicated"
      ref = local_volumes[volid].ref
      if ref == constants.VOLUME_REF_STORAGE:
        job.Log(base.LOG_INFO, "found %s disk '%s' (via storage)" %
                (kind, volid))
      elif ref == constants.VOLUME_REF_CONFIG:
        if job.running and not job.with_local_disks:
          volume_errors[volid] = ("can't live migrate attached local disks"
                                  " without with-local-disks option")
        job.Log(base.LOG_INFO, "found %s disk '%s' (in current VM config)" %
                (kind, volid))
      elif ref == constants.VOLUME_REF_SNAPSHOT:
        job.Log(base.LOG_INFO, "found %s disk '%s' (referenced by"
                " snapshot(s))" % (kind, volid))
      elif ref == constants.VOLUME_REF_GENERATED:
        job.Log(base.LOG_INFO, "found generated disk '%s' (in current VM"
                " config)" % volid)
      else:
        job.Log(base.LOG_INFO, "found %s disk '%s'" % (kind, volid))

    for volid in sorted(volume_errors):
      job.Log(base.LOG_WARN, "can't migrate local disk '%s': %s" %
              (volid, volume_errors[volid]))
    for msg in other_errors:
      job.Log(base.LOG_WARN, msg)

    if volume_errors or other_errors:
      raise errors.DiskSyncError("can't migrate VM - check log",
                                 volume_errors, other_errors)

    for volid in sorted(local_volumes):
      (storeid, volname) = storage.ParseVolumeId(volid)
      backend = self._storage.GetBackend(storeid)
      if backend.STORAGE_TYPE not in constants.ST_MIGRATABLE:
        raise errors.OpPrereqError("can't migrate '%s' - storage type '%s'"
                                   " not supported" %
                                   (volid, backend.STORAGE_TYPE),
                                   errors.ECODE_STATE)
      basename = backend.ParseVolname(volname).basename
      if basename:
        raise errors.OpPrereqError("can't migrate '%s' as it's a clone of"
                                   " '%s'" % (volid, basename),
                                   errors.ECODE_STATE)

    job.local_volumes = local_volumes
    return local_volumes

  def CorrectSizes(self):
    """Updates the drive sizes in the config to the actual volume sizes.

    The destination allocates its volumes from these sizes.

    """
    job = self.job
    sizes = {}
    storeids = set(storage.ParseVolumeId(volid)[0]
                   for volid in job.local_volumes
                   if not storage.IsPathVolume(volid))
    for storeid in sorted(storeids):
      for info in self._storage.ListGuestVolumes(storeid, job.guest_id):
        if info.get("size") is not None:
          sizes[info["volid"]] = int(info["size"])

    for drive in job.config.IterDrives():
      # the efi vars disk has a fixed size known to the destination
      if drive.key == "efidisk0":
        continue
      if drive.file not in job.local_volumes or drive.file not in sizes:
        continue
      size = sizes[drive.file]
      job.local_volumes[drive.file].size = size
      old_size = drive.GetSize()
      if old_size == size:
        continue
      drive.SetOption("size", objects.FormatSize(size))
      job.config.SetDrive(drive)
      job.Log(base.LOG_INFO, "drive '%s': size of disk '%s' updated from %s"
              " to %s" % (drive.key, drive.file,
                          objects.FormatSize(old_size or 0),
                          objects.FormatSize(size)))

  def _CopyVolume(self, entry):
    job = self.job
    (storeid, _) = storage.ParseVolumeId(entry.volid)
    target_sid = entry.target_storage or self._MapStorage(storeid)

    bwlimit = self._storage.GetBandwidthLimit(constants.BWLIMIT_MIGRATION,
                                              [target_sid, storeid],
                                              override=job.bwlimit)
    if bwlimit is not None:
      # KiB/s to B/s
      bwlimit *= 1024

    try:
      new_volid = self._storage.CopyTo(
        entry.volid, job.ssh, target_sid, rate_limit=bwlimit,
        with_snapshots=bool(entry.snapshots),
        allow_rename=not entry.is_vmstate,
        log_fn=lambda line: job.Log(base.LOG_INFO, line))
    except errors.StorageError as err:
      raise errors.DiskSyncError("storage migration for '%s' to storage '%s'"
                                 " failed - %s" % (entry.volid, target_sid,
                                                   err),
                                 {entry.volid: str(err)})

    entry.target_volid = new_volid
    job.volume_map[entry.volid] = new_volid
    job.Log(base.LOG_INFO, "volume '%s' is '%s' on the target" %
            (entry.volid, new_volid))

    try:
      self._storage.Deactivate([entry.volid])
    except errors.StorageError as err:
      job.Log(base.LOG_WARN, err)

  def _MarkReplicated(self):
    """Classifies the volumes brought up to date by the replication pass.

    Volumes in use by a running guest keep their classification, as the
    block-mirror still has to transfer their remaining delta.

    """
    job = self.job
    for volid in job.replicated_volumes:
      entry = job.local_volumes.get(volid)
      if entry is None or entry.ref == constants.VOLUME_REF_GENERATED:
        continue
      if job.running and entry.ref == constants.VOLUME_REF_CONFIG:
        continue
      entry.ref = constants.VOLUME_REF_REPLICATED

  def CopyVolumes(self):
    """Copies the local volumes, or queues them for the block-mirror.

    """
    job = self.job
    if job.local_volumes:
      job.Log(base.LOG_INFO, "copying local disk images")

    for volid in sorted(job.local_volumes):
      entry = job.local_volumes[volid]
      if job.running and entry.ref == constants.VOLUME_REF_CONFIG:
        job.online_local_volumes.append(volid)
      elif entry.ref == constants.VOLUME_REF_GENERATED:
        if job.running:
          raise errors.OpPrereqError("can't live migrate VM with local"
                                     " cloudinit disk. use a shared storage"
                                     " instead", errors.ECODE_STATE)
        # only deleted from the source once the migration went through
        job.volumes.append(volid)
      elif entry.ref == constants.VOLUME_REF_REPLICATED:
        continue
      else:
        job.volumes.append(volid)
        self._CopyVolume(entry)

  def Sync(self):
    """Inventories, replicates and copies the local disks.

    @raise errors.DiskSyncError: if volumes can't be or could not be copied
    @raise errors.GenericError: for other failures

    """
    job = self.job
    try:
      self.Inventory()

      if job.replication_job:
        job.replicated_volumes = self._replication.Sync(job, self._time_fn())
        self._MarkReplicated()

      self.CorrectSizes()
      self.CopyVolumes()
    except errors.DiskSyncError:
      raise
    except errors.OpPrereqError as err:
      raise errors.OpPrereqError("Failed to sync data - %s" %
                                 errors.FormatError(err), errors.ECODE_STATE)
    except errors.GenericError as err:
      raise errors.OpExecError("Failed to sync data - %s" % err)

  def CleanupRemoteDisks(self):
    """Frees the destination volumes created for the block-mirror.

    Replicated volumes are kept.

    """
    job = self.job
    for drive in sorted(job.target_drives):
      target = job.target_drives[drive]
      if not target.drivestr:
        continue
      volid = objects.ParseDrive(drive, target.drivestr).file
      if volid in job.replicated_volumes:
        continue
      result = job.ssh.Run([constants.STORAGE_TOOL, "free", volid])
      if result.failed:
        job.Log(base.LOG_ERR, "failed to free volume '%s' on node '%s': %s" %
                (volid, job.target, result.output.strip() or
                 result.fail_reason))

  def FreeLocalVolumes(self, volids):
    """Removes the source copies of migrated volumes.

    Replicated volumes are kept. Stops early when interrupted by a signal.

    """
    job = self.job
    for volid in volids:
      if volid in job.replicated_volumes:
        continue
      try:
        self._storage.Free(volid)
      except errors.StorageError as err:
        job.Log(base.LOG_ERR, "removing local copy of '%s' failed - %s" %
                (volid, err))
        if _INTERRUPTED_MSG in str(err):
          break
