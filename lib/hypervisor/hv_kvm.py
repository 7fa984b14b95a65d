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


"""KVM hypervisor control surface used by the migration code.

"""

import logging

import psutil

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import objects
from vmmigrate import pathutils
from vmmigrate import utils
from vmmigrate.hypervisor.monitor import QmpConnection


def _DriveNode(drive):
  return constants.DRIVE_NODE_PREFIX + drive


class KvmHypervisor(object):
  """Commands for the QEMU processes of the local guests.

  Every method opens its own QMP connection to the guest, so the object
  holds no state besides the injected helpers.

  """
  def __init__(self, _qmp_cls=QmpConnection,
               _socket_fn=pathutils.GetGuestQmpSocket,
               _pidfile_fn=pathutils.GetGuestPidFile):
    self._qmp_cls = _qmp_cls
    self._socket_fn = _socket_fn
    self._pidfile_fn = _pidfile_fn

  def _Qmp(self, guest_id):
    return self._qmp_cls(self._socket_fn(guest_id))

  def _GuestPid(self, guest_id):
    """Returns the pid of a guest's process, or 0 if it is not running.

    The pid file is only trusted if the process command line carries the
    guest id.

    """
    pid = utils.ReadPidFile(self._pidfile_fn(guest_id))
    if not utils.IsProcessAlive(pid):
      return 0

    try:
      cmdline = psutil.Process(pid).cmdline()
    except (psutil.NoSuchProcess, psutil.AccessDenied) as err:
      logging.debug("Can't read command line of pid %s: %s", pid, err)
      return 0

    for (idx, arg) in enumerate(cmdline[:-1]):
      if arg == "-id" and cmdline[idx + 1] == str(guest_id):
        return pid
    return 0

  def IsRunning(self, guest_id):
    return self._GuestPid(guest_id) > 0

  def QueryTransferStatus(self, guest_id):
    """Returns the memory transfer status.

    @rtype: L{objects.MigrationStatus}
    @raise errors.TransientPollError: if the status can't be queried

    """
    try:
      with self._Qmp(guest_id) as qmp:
        result = qmp.QueryMigrate()
    except errors.HypervisorError as err:
      raise errors.TransientPollError("query-migrate failed: %s" % err)
    return objects.MigrationStatus.FromQmp(result or {})

  def SetCapabilities(self, guest_id, capabilities):
    """Enables memory transfer capabilities.

    @type capabilities: list
    @param capabilities: names of the capabilities to enable

    """
    with self._Qmp(guest_id) as qmp:
      qmp.SetMigrateCapabilities(dict((name, True) for name in capabilities))

  def SetTransferParameters(self, guest_id, params):
    """Applies the tunable transfer parameters.

    Unset parameters are left untouched.

    @type params: L{objects.TransferParameters}

    """
    arguments = {}
    if params.max_bandwidth is not None:
      arguments["max-bandwidth"] = int(params.max_bandwidth)
    if params.downtime_limit is not None:
      arguments["downtime-limit"] = int(params.downtime_limit)
    if params.cache_size is not None:
      arguments["xbzrle-cache-size"] = int(params.cache_size)
    with self._Qmp(guest_id) as qmp:
      qmp.SetMigrateParameters(arguments)

  def TriggerTransfer(self, guest_id, uri):
    with self._Qmp(guest_id) as qmp:
      qmp.Migrate(uri)

  def CancelTransfer(self, guest_id):
    with self._Qmp(guest_id) as qmp:
      qmp.MigrateCancel()

  def AddDirtyBitmap(self, guest_id, drive, name):
    with self._Qmp(guest_id) as qmp:
      qmp.AddDirtyBitmap(_DriveNode(drive), name)

  def RemoveDirtyBitmap(self, guest_id, drive, name):
    with self._Qmp(guest_id) as qmp:
      qmp.RemoveDirtyBitmap(_DriveNode(drive), name)

  def StartBlockMirror(self, guest_id, drive, uri, bitmap=None, speed=None):
    """Starts mirroring a drive to a network block device endpoint.

    @type speed: int or None
    @param speed: bytes per second

    """
    with self._Qmp(guest_id) as qmp:
      qmp.DriveMirror(_DriveNode(drive), uri, bitmap=bitmap, speed=speed)

  def QueryBlockJobs(self, guest_id):
    """Returns the running block jobs.

    @rtype: dict
    @return: job info keyed by device name

    """
    with self._Qmp(guest_id) as qmp:
      jobs = qmp.QueryBlockJobs() or []
    return dict((job["device"], job) for job in jobs)

  def CancelBlockMirror(self, guest_id, drive, force=False):
    """Cancels a block-mirror job.

    For a job in the ready state this finishes the copy without switching
    the guest over to the target, which is the cutover used for migration.

    """
    with self._Qmp(guest_id) as qmp:
      qmp.BlockJobCancel(_DriveNode(drive), force=force)

  def QuerySpice(self, guest_id):
    with self._Qmp(guest_id) as qmp:
      return qmp.QuerySpice()

  def SetSpiceMigrateInfo(self, guest_id, hostname, tls_port):
    with self._Qmp(guest_id) as qmp:
      qmp.ClientMigrateInfo(hostname, port=0, tls_port=tls_port)

  def Resume(self, guest_id):
    with self._Qmp(guest_id) as qmp:
      qmp.Continue()

  def StopGuest(self, guest_id, timeout=constants.GUEST_STOP_TIMEOUT):
    """Stops a guest process.

    The process is asked to quit through QMP first and killed if it does
    not go away in time.

    """
    pid = self._GuestPid(guest_id)
    if not pid:
      return

    try:
      with self._Qmp(guest_id) as qmp:
        qmp.Quit()
    except errors.HypervisorError as err:
      logging.warning("Can't quit guest %s through QMP: %s", guest_id, err)

    utils.KillProcess(pid, timeout=timeout)
    if utils.IsProcessAlive(pid):
      raise errors.HypervisorError("Guest %s (pid %s) did not stop" %
                                   (guest_id, pid))
