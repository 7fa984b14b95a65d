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


"""Utilities for unit testing"""

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import objects
from vmmigrate import utils


def MakeResult(cmd, output="", exit_code=0, stderr=""):
  """Builds a L{utils.RunResult} as returned by L{utils.RunCmd}.

  """
  if isinstance(cmd, (list, tuple)):
    cmd = utils.ShellQuoteArgs([str(i) for i in cmd])
  return utils.RunResult(exit_code, None, output, stderr, cmd, 0, None)


class FakeHypervisor(object):
  """In-memory stand-in for L{vmmigrate.hypervisor.hv_kvm.KvmHypervisor}.

  @ivar statuses: transfer status replies, consumed in order; an exception
      instance is raised instead of returned
  @ivar calls: (method, args) for every call

  """
  def __init__(self, running=True, statuses=None, mirror_ready=True):
    self.running = running
    self.statuses = list(statuses or [])
    self.mirror_ready = mirror_ready
    self.block_jobs = {}
    self.calls = []
    self.spice = {"migrated": True}
    self.fail = {}

  def _Record(self, name, *args):
    self.calls.append((name, args))
    err = self.fail.get(name)
    if err is not None:
      raise err

  def GetCalls(self, name):
    return [args for (call, args) in self.calls if call == name]

  def IsRunning(self, guest_id):
    return self.running

  def QueryTransferStatus(self, guest_id):
    self._Record("QueryTransferStatus", guest_id)
    reply = self.statuses.pop(0)
    if isinstance(reply, Exception):
      raise reply
    return reply

  def SetCapabilities(self, guest_id, capabilities):
    self._Record("SetCapabilities", guest_id, capabilities)

  def SetTransferParameters(self, guest_id, params):
    self._Record("SetTransferParameters", guest_id, params.Copy())

  def TriggerTransfer(self, guest_id, uri):
    self._Record("TriggerTransfer", guest_id, uri)

  def CancelTransfer(self, guest_id):
    self._Record("CancelTransfer", guest_id)

  def AddDirtyBitmap(self, guest_id, drive, name):
    self._Record("AddDirtyBitmap", guest_id, drive, name)

  def RemoveDirtyBitmap(self, guest_id, drive, name):
    self._Record("RemoveDirtyBitmap", guest_id, drive, name)

  def StartBlockMirror(self, guest_id, drive, uri, bitmap=None, speed=None):
    self._Record("StartBlockMirror", guest_id, drive, uri, bitmap, speed)
    self.block_jobs[constants.DRIVE_NODE_PREFIX + drive] = {
      "device": constants.DRIVE_NODE_PREFIX + drive,
      "offset": 1024,
      "len": 1024,
      "ready": self.mirror_ready,
      }

  def QueryBlockJobs(self, guest_id):
    self._Record("QueryBlockJobs", guest_id)
    return dict((name, dict(info)) for (name, info) in self.block_jobs.items())

  def CancelBlockMirror(self, guest_id, drive, force=False):
    self._Record("CancelBlockMirror", guest_id, drive, force)
    self.block_jobs.pop(constants.DRIVE_NODE_PREFIX + drive, None)

  def QuerySpice(self, guest_id):
    self._Record("QuerySpice", guest_id)
    return self.spice

  def SetSpiceMigrateInfo(self, guest_id, hostname, tls_port):
    self._Record("SetSpiceMigrateInfo", guest_id, hostname, tls_port)

  def Resume(self, guest_id):
    self._Record("Resume", guest_id)

  def StopGuest(self, guest_id, timeout=constants.GUEST_STOP_TIMEOUT):
    self._Record("StopGuest", guest_id)
    self.running = False


def Status(status, transferred=None, remaining=None, total=None,
           downtime=None):
  """Shortcut for building a transfer status.

  """
  return objects.MigrationStatus(status=status, transferred_ram=transferred,
                                 remaining_ram=remaining, total_ram=total,
                                 downtime=downtime)


def QueryError(msg="monitor busy"):
  return errors.TransientPollError(msg)


class FakeSsh(object):
  """Stand-in for L{vmmigrate.ssh.SshRunner} recording remote commands.

  Handlers are looked up by the first two words of a command and called
  with the command and the keyword arguments of L{Run}; they return a
  L{utils.RunResult}. Unhandled commands succeed without output.

  """
  def __init__(self, node="node2", address="10.0.0.2"):
    self.node_name = node
    self.address = address
    self.commands = []
    self.handlers = {}

  def BuildCmd(self, command, forwards=None, batch=True, quiet=True):
    argv = [constants.SSH, "root@%s" % self.address]
    for fwd in forwards or []:
      argv.extend(["-L", fwd])
    if isinstance(command, (list, tuple)):
      command = utils.ShellQuoteArgs([str(i) for i in command])
    argv.append(command)
    return argv

  def Run(self, command, **kwargs):
    command = [str(i) for i in command]
    self.commands.append(command)
    handler = self.handlers.get(tuple(command[:2]))
    if handler is None:
      return MakeResult(command)
    return handler(command, **kwargs)

  def GetCommands(self, *prefix):
    return [cmd for cmd in self.commands
            if tuple(cmd[:len(prefix)]) == prefix]

  def VerifyConnection(self):
    pass


class FakeTunnel(object):
  """Stand-in for an open L{vmmigrate.migration.tunnel.ControlChannel}.

  """
  def __init__(self, version=1):
    self.version = version
    self.commands = []
    self.closed = 0
    self.forwards = None
    self.sockets = None

  def WriteCommand(self, command, timeout=constants.TUNNEL_REPLY_TIMEOUT,
                   noerr=False):
    self.commands.append(command)

  def IsOpen(self):
    return not self.closed

  def Close(self, send_quit=True):
    self.closed += 1
