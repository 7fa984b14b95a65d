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


"""Migration job state and the phase driver.

"""

import logging
import time

from vmmigrate import errors
from vmmigrate import utils


LOG_INFO = "info"
LOG_WARN = "warn"
LOG_ERR = "err"

_LOG_LEVELS = {
  LOG_INFO: logging.INFO,
  LOG_WARN: logging.WARNING,
  LOG_ERR: logging.ERROR,
  }

PHASE_PREPARE = "prepare"
PHASE_1 = "phase1"
PHASE_2 = "phase2"
PHASE_3 = "phase3"

#: Phases in execution order
PHASES = [
  PHASE_PREPARE,
  PHASE_1,
  PHASE_2,
  PHASE_3,
  ]


class MigrationJob(object):
  """State of one migration run.

  The job is owned by the runner driving it; the phases and their
  compensations record everything they create here, so that cleanup knows
  what to undo.

  @ivar log: list of (timestamp, level, message) entries
  @ivar had_errors: whether an error was logged
  @ivar phase2_failed: whether the live transfer phase failed

  """
  def __init__(self, guest_id, source, target, online=False, force=False,
               migration_type=None, migration_network=None, storage_map=None,
               bridge_map=None, with_local_disks=False, bwlimit=None,
               _time_fn=time.time):
    self.guest_id = guest_id
    self.source = source
    self.target = target
    self.target_address = None
    self.online = online
    self.force = force
    self.migration_type = migration_type
    self.migration_network = migration_network
    self.storage_map = storage_map
    self.bridge_map = bridge_map
    self.with_local_disks = with_local_disks
    self.bwlimit = bwlimit
    self._time_fn = _time_fn

    self.log = []
    self.had_errors = False
    self.phase2_failed = False
    self.started_phases = []

    self.config = None
    self.running = False
    self.force_machine = None
    self.ssh = None
    self.tunnel = None

    # disks
    self.local_volumes = {}
    self.volumes = []
    self.volume_map = {}
    self.online_local_volumes = []

    # network interfaces changed by the bridge map, with their old values
    self.original_nets = {}

    # replication
    self.replication_job = None
    self.is_replicated = False
    self.replicated_volumes = {}
    self.bitmaps = {}

    # destination guest
    self.target_drives = {}
    self.target_replicated = {}
    self.migrate_uri = None
    self.migrate_host = None
    self.migrate_port = None
    self.migrate_socket = None
    self.nbd_sockets = []
    self.spice_port = None
    self.spice_ticket = None
    self.stop_nbd = False
    self.remote_started = False
    self.mirror = None
    self.transfer = None

  def Log(self, level, msg):
    """Records a message in the job log.

    @type level: string
    @param level: one of C{LOG_INFO}, C{LOG_WARN} and C{LOG_ERR}

    """
    if isinstance(msg, Exception):
      msg = errors.FormatError(msg)
    msg = str(msg).rstrip("\n")
    if level == LOG_ERR:
      self.had_errors = True
    self.log.append((self._time_fn(), level, msg))
    logging.log(_LOG_LEVELS.get(level, logging.INFO), "%s", msg)

  def GetLogMessages(self, level=None):
    return [msg for (_, lvl, msg) in self.log
            if level is None or lvl == level]


class MigrationRunner(object):
  """Drives the phases of a migration.

  Each phase has a compensation, which is invoked when that phase or a
  later one fails. Compensations run in reverse phase order and only for
  phases that were started; every single cleanup step inside them is
  expected to log its problems instead of raising.

  Subclasses implement the C{Prepare}, C{Phase1}, C{Phase2}, C{Phase3} and
  C{Phase3Cleanup} steps plus the C{Phase1Cleanup} and C{Phase2Cleanup}
  compensations.

  """
  def __init__(self, job, _time_fn=time.monotonic):
    self.job = job
    self._time_fn = _time_fn
    self._compensations = {
      PHASE_1: self.Phase1Cleanup,
      PHASE_2: self.Phase2Cleanup,
      }

  def _LockGuest(self):
    """Returns the lock serializing migrations of the guest, or None.

    """
    return None

  def Prepare(self):
    """Checks that the guest can be migrated.

    @rtype: boolean
    @return: whether the guest is running

    """
    raise NotImplementedError()

  def Phase1(self):
    raise NotImplementedError()

  def Phase1Cleanup(self):
    raise NotImplementedError()

  def Phase2(self):
    raise NotImplementedError()

  def Phase2Cleanup(self):
    raise NotImplementedError()

  def Phase3(self):
    raise NotImplementedError()

  def Phase3Cleanup(self):
    raise NotImplementedError()

  def FinalCleanup(self):
    pass

  def _RunPhase(self, phase, fn):
    self.job.started_phases.append(phase)
    logging.debug("Entering %s of guest %s", phase, self.job.guest_id)
    fn()

  def Compensate(self, phase):
    """Runs the compensation of a phase and of all earlier ones.

    Phases that never started are skipped, so this is safe to call at any
    point.

    """
    idx = PHASES.index(phase)
    for name in reversed(PHASES[:idx + 1]):
      fn = self._compensations.get(name)
      if fn is None or name not in self.job.started_phases:
        continue
      try:
        fn()
      except Exception as err: # pylint: disable=W0703
        self.job.Log(LOG_ERR, err)

  def _BestEffort(self, fn, *args):
    try:
      fn(*args)
    except Exception as err: # pylint: disable=W0703
      self.job.Log(LOG_ERR, err)

  def _Run(self):
    job = self.job

    job.started_phases.append(PHASE_PREPARE)
    job.running = self.Prepare()

    try:
      self._RunPhase(PHASE_1, self.Phase1)
    except Exception as err: # pylint: disable=W0703
      job.Log(LOG_ERR, err)
      self.Compensate(PHASE_1)
      self._BestEffort(self.FinalCleanup)
      raise

    if job.running:
      try:
        self._RunPhase(PHASE_2, self.Phase2)
      except Exception as err: # pylint: disable=W0703
        job.Log(LOG_ERR, err)
        job.phase2_failed = True
        self.Compensate(PHASE_2)
        self._BestEffort(self.FinalCleanup)
        raise

    job.started_phases.append(PHASE_3)
    phase3_err = None
    try:
      self.Phase3()
    except Exception as err: # pylint: disable=W0703
      job.Log(LOG_ERR, err)
      phase3_err = err

    self._BestEffort(self.Phase3Cleanup)
    self._BestEffort(self.FinalCleanup)

    if phase3_err is not None:
      raise phase3_err

  def Migrate(self):
    """Runs the whole migration.

    @raise errors.GenericError: the error that aborted the migration, or
        L{errors.OpExecError} if it completed with problems

    """
    job = self.job
    start = self._time_fn()

    abort_err = None
    try:
      lock = self._LockGuest()
      try:
        self._Run()
      finally:
        if lock is not None:
          lock.Close()
    except Exception as err: # pylint: disable=W0703
      abort_err = err

    duration = utils.FormatDuration(self._time_fn() - start)

    if abort_err is not None:
      job.Log(LOG_ERR, "migration aborted (duration %s): %s" %
              (duration, errors.FormatError(abort_err)))
      raise abort_err

    if job.had_errors:
      job.Log(LOG_ERR, "migration finished with problems (duration %s)" %
              duration)
      raise errors.OpExecError("migration problems")

    job.Log(LOG_INFO, "migration finished successfully (duration %s)" %
            duration)
