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


"""Hand-over of replicated guests.

Disks under a replication job towards the destination already exist there.
One replication pass brings them up to date; for a running guest, a dirty
bitmap attached to each such drive beforehand tracks the writes happening
meanwhile, so the block-mirror in the live phase only has to copy those.

"""

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import objects
from vmmigrate import pathutils
from vmmigrate import serializer
from vmmigrate import storage
from vmmigrate import utils
from vmmigrate.migration import base


class ReplicationBridge(object):
  """Runs replication passes and manages their bitmaps.

  """
  def __init__(self, cluster_cfg, storage_mgr, hypervisor,
               _run_fn=utils.RunCmd,
               _state_file=pathutils.REPLICATION_STATE_FILE):
    self._cluster_cfg = cluster_cfg
    self._storage = storage_mgr
    self._hv = hypervisor
    self._run_fn = _run_fn
    self._state_file = _state_file

  def FindJob(self, guest_id, target):
    return self._cluster_cfg.FindReplicationJob(guest_id, target)

  def IsReplicated(self, guest_id):
    return bool(self._cluster_cfg.GetReplicationJobs(guest_id))

  def GetReplicatableVolumes(self, config):
    """Returns the volumes of a guest that replication keeps in sync.

    Drives marked with C{replicate=0}, cdroms and volumes on storages
    without replication support are left out.

    @rtype: dict
    @return: volume id to C{True}

    """
    result = {}
    sections = [None] + list(config.snapshots.values())
    for section in sections:
      for drive in config.IterDrives(section=section):
        if drive.IsCdrom() or not drive.IsReplicated():
          continue
        if drive.file == "none" or storage.IsPathVolume(drive.file):
          continue
        if self._storage.SupportsFeature(drive.file, constants.STF_REPLICATE):
          result[drive.file] = True
    return result

  def _AddBitmaps(self, job, replicatable):
    for drive in job.config.IterDrives():
      if drive.file not in replicatable:
        continue
      bitmap = objects.ReplicationBitmap.ForDrive(drive.key)
      job.Log(base.LOG_INFO, "%s: start tracking writes using"
              " block-dirty-bitmap '%s'" % (drive.key, bitmap.name))
      self._hv.AddDirtyBitmap(job.guest_id, drive.key, bitmap.name)
      job.bitmaps[drive.key] = bitmap

  def Sync(self, job, as_of_time):
    """Runs one replication pass for a guest.

    @type job: L{base.MigrationJob}
    @param job: the migration; its C{replication_job} is the one to run
    @type as_of_time: float
    @param as_of_time: the pass must include all writes up to this time
    @rtype: dict
    @return: volume id to C{True} for every volume now in sync on the
        destination

    """
    repl_job = job.replication_job
    replicatable = self.GetReplicatableVolumes(job.config)

    if job.running:
      # bitmaps must exist before the pass starts so that no write is missed
      self._AddBitmaps(job, replicatable)

    job.Log(base.LOG_INFO, "replicating disk images")
    result = self._run_fn([constants.REPLICATION_TOOL, "run",
                           "--id", repl_job["id"],
                           "--start-time", "%d" % int(as_of_time),
                           "--verbose"],
                          output_fn=lambda line: job.Log(base.LOG_INFO, line))
    if result.failed:
      raise errors.OpExecError("replication job %s failed: %s" %
                               (repl_job["id"], result.fail_reason))

    return dict((volid, True) for volid in replicatable)

  def RemoveBitmaps(self, job):
    """Removes the dirty bitmaps of a migration.

    Each bitmap is removed on its own; failures are logged.

    """
    for drive in sorted(job.bitmaps):
      bitmap = job.bitmaps[drive]
      job.Log(base.LOG_INFO, "%s: removing block-dirty-bitmap '%s'" %
              (drive, bitmap.name))
      try:
        self._hv.RemoveDirtyBitmap(job.guest_id, drive, bitmap.name)
      except errors.HypervisorError as err:
        job.Log(base.LOG_ERR, "%s: removing block-dirty-bitmap failed: %s" %
                (drive, err))
        continue
      del job.bitmaps[drive]

  def TransferState(self, job):
    """Copies the local replication state of the guest to the destination.

    """
    try:
      states = serializer.LoadJson(utils.ReadFile(self._state_file))
    except EnvironmentError:
      states = {}
    except ValueError as err:
      raise errors.OpExecError("replication state file %s is corrupt: %s" %
                               (self._state_file, err))
    state = states.get(str(job.guest_id), {})

    data = serializer.DumpJson(state).strip()
    result = job.ssh.Run([constants.REPLICATION_TOOL, "set-state",
                          str(job.guest_id), data])
    if result.failed:
      raise errors.OpExecError("transferring replication state failed: %s" %
                               (result.output.strip() or result.fail_reason))

  def SwitchTarget(self, job):
    """Makes the jobs towards the destination replicate back to the source.

    """
    changed = self._cluster_cfg.SwitchReplicationTarget(job.guest_id,
                                                        job.target,
                                                        job.source)
    for job_id in changed:
      job.Log(base.LOG_INFO, "switching replication job target for %s to"
              " node '%s'" % (job_id, job.source))
