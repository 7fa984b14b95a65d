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


"""Block-mirror jobs copying running disks to the destination.

"""

import time

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import objects
from vmmigrate import utils
from vmmigrate.migration import base


class MirrorCoordinator(object):
  """Runs one block-mirror job per drive and finishes them together.

  A job is started against the network block device exported by the
  destination and is ready once source and destination are in sync; from
  then on the hypervisor keeps both sides in sync until the job is
  finished. Finishing a ready job with a cancel completes the copy without
  switching the source over to the destination, which is the cutover used
  here.

  @ivar jobs: drive to L{objects.DriveMirrorJob}

  """
  def __init__(self, job, hypervisor, _sleep_fn=time.sleep,
               _time_fn=time.monotonic):
    self.job = job
    self.jobs = {}
    self._hv = hypervisor
    self._sleep_fn = _sleep_fn
    self._time_fn = _time_fn

  def Start(self, drive, target_uri, bitmap=None, speed=None):
    """Starts mirroring one drive.

    @type speed: int or None
    @param speed: bytes per second

    """
    job = self.job
    mjob = objects.DriveMirrorJob(drive=drive, target_uri=target_uri,
                                  bitmap=bitmap, state=constants.MIRROR_RUNNING)
    job.Log(base.LOG_INFO, "%s: start migration to %s" % (drive, target_uri))
    try:
      self._hv.StartBlockMirror(job.guest_id, drive, target_uri,
                                bitmap=bitmap, speed=speed)
    except errors.HypervisorError as err:
      raise errors.OpExecError("mirroring of drive %s failed: %s" %
                               (drive, err))
    self.jobs[drive] = mjob
    return mjob

  def _Poll(self):
    """Updates the job states from the hypervisor.

    Jobs no longer known to the hypervisor before being finished have
    failed.

    """
    info = self._hv.QueryBlockJobs(self.job.guest_id)
    for drive in sorted(self.jobs):
      mjob = self.jobs[drive]
      if mjob.state not in (constants.MIRROR_RUNNING, constants.MIRROR_READY):
        continue
      jinfo = info.get(mjob.job_id)
      if jinfo is None:
        mjob.state = constants.MIRROR_FAILED
        continue
      mjob.offset = jinfo.get("offset", 0)
      mjob.length = jinfo.get("len", 0)
      if jinfo.get("ready"):
        mjob.state = constants.MIRROR_READY
    return info

  def _CheckReady(self):
    pending = []
    for drive in sorted(self.jobs):
      mjob = self.jobs[drive]
      if mjob.state == constants.MIRROR_FAILED:
        raise errors.OpExecError("%s: mirroring has been cancelled" % drive)
      if mjob.state != constants.MIRROR_READY:
        pending.append(mjob)
    return pending

  def WaitReady(self, timeout=constants.MIRROR_READY_TIMEOUT):
    """Waits until every job is ready.

    @raise errors.OpExecError: if a job fails or the timeout expires

    """
    job = self.job

    def _Check():
      try:
        self._Poll()
      except errors.HypervisorError as err:
        raise errors.OpExecError("querying block jobs failed: %s" % err)
      pending = self._CheckReady()
      if not pending:
        return
      for mjob in pending:
        if mjob.length:
          job.Log(base.LOG_INFO, "%s: transferred %s of %s (%.2f%%)" %
                  (mjob.drive, objects.FormatSize(mjob.offset or 0),
                   objects.FormatSize(mjob.length),
                   100.0 * (mjob.offset or 0) / mjob.length))
      raise utils.RetryAgain()

    try:
      utils.Retry(_Check, constants.MIRROR_POLL_INTERVAL, timeout,
                  wait_fn=self._sleep_fn, _time_fn=self._time_fn)
    except utils.RetryTimeout:
      raise errors.OpExecError("block-mirror jobs did not get ready within %s"
                               " seconds" % timeout)
    job.Log(base.LOG_INFO, "all mirroring jobs are ready")

  def _WaitGone(self, timeout):
    def _Check():
      info = self._hv.QueryBlockJobs(self.job.guest_id)
      if any(mjob.job_id in info for mjob in self.jobs.values()):
        raise utils.RetryAgain()

    utils.Retry(_Check, constants.MIRROR_POLL_INTERVAL, timeout,
                wait_fn=self._sleep_fn, _time_fn=self._time_fn)

  def Complete(self, timeout=constants.MIRROR_FINISH_TIMEOUT):
    """Finishes all jobs, which must be ready.

    @raise errors.OpExecError: if a job is not ready or does not finish

    """
    if not self.jobs:
      return

    try:
      self._Poll()
    except errors.HypervisorError as err:
      raise errors.OpExecError("querying block jobs failed: %s" % err)
    pending = self._CheckReady()
    if pending:
      raise errors.OpExecError("block-mirror of %s is not ready" %
                               utils.CommaJoin(m.drive for m in pending))

    for drive in sorted(self.jobs):
      try:
        self._hv.CancelBlockMirror(self.job.guest_id, drive)
      except errors.HypervisorError as err:
        raise errors.OpExecError("%s: completing block-mirror failed: %s" %
                                 (drive, err))

    try:
      self._WaitGone(timeout)
    except utils.RetryTimeout:
      raise errors.OpExecError("block-mirror jobs did not finish within %s"
                               " seconds" % timeout)
    except errors.HypervisorError as err:
      raise errors.OpExecError("querying block jobs failed: %s" % err)

    for mjob in self.jobs.values():
      mjob.state = constants.MIRROR_COMPLETED
    self.job.Log(base.LOG_INFO, "all mirroring jobs are completed")

  def Cancel(self, timeout=constants.MIRROR_FINISH_TIMEOUT):
    """Aborts all unfinished jobs.

    Problems are logged; calling this without jobs does nothing.

    """
    job = self.job
    active = [mjob for mjob in self.jobs.values()
              if mjob.state not in (constants.MIRROR_COMPLETED,
                                    constants.MIRROR_CANCELLED)]
    if not active:
      return

    for mjob in sorted(active, key=lambda m: m.drive):
      job.Log(base.LOG_INFO, "%s: cancelling block-mirror" % mjob.drive)
      try:
        self._hv.CancelBlockMirror(job.guest_id, mjob.drive, force=True)
      except errors.HypervisorError as err:
        job.Log(base.LOG_ERR, "%s: cancelling block-mirror failed: %s" %
                (mjob.drive, err))
      mjob.state = constants.MIRROR_CANCELLED

    try:
      self._WaitGone(timeout)
    except utils.RetryTimeout:
      job.Log(base.LOG_ERR, "block-mirror jobs did not go away within %s"
              " seconds" % timeout)
    except errors.HypervisorError as err:
      job.Log(base.LOG_ERR, "querying block jobs failed: %s" % err)
