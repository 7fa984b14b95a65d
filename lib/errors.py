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


"""vmmigrate exception handling.

"""

from vmmigrate import constants


ECODE_NORES = constants.ERRORS_ECODE_NORES
ECODE_INVAL = constants.ERRORS_ECODE_INVAL
ECODE_STATE = constants.ERRORS_ECODE_STATE
ECODE_NOENT = constants.ERRORS_ECODE_NOENT
ECODE_EXISTS = constants.ERRORS_ECODE_EXISTS
ECODE_FAULT = constants.ERRORS_ECODE_FAULT
ECODE_ENVIRON = constants.ERRORS_ECODE_ENVIRON
ECODE_ALL = constants.ERRORS_ECODE_ALL


class GenericError(Exception):
  """Base exception for vmmigrate.

  """


class ProgrammerError(GenericError):
  """Programming-related error.

  This is raised in cases we determine that the calling conventions
  have been violated, meaning we got some desynchronisation between
  parts of our code. It signifies a real programming bug.

  """


class ConfigurationError(GenericError):
  """Configuration related exception.

  Things like a guest configuration referencing a storage that is not
  defined in the cluster configuration raise this exception.

  """


class LockError(GenericError):
  """The guest configuration is locked by another operation.

  """


class HypervisorError(GenericError):
  """Hypervisor-related exception.

  This is raised in case we can't communicate with the hypervisor
  properly.

  """


class TransientPollError(HypervisorError):
  """A status query to the hypervisor failed.

  The memory transfer loop tolerates a bounded number of these before
  it gives up.

  """


class StorageError(GenericError):
  """Storage-related exception.

  """


class CommandError(GenericError):
  """External command error.

  """


class OpPrereqError(GenericError):
  """Prerequisites for the migration are not fulfilled.

  This exception has two arguments: an error message, and one of the
  ECODE_* codes. Nothing has been changed when it is raised.

  """


class DiskSyncError(GenericError):
  """One or more volumes cannot be (or could not be) copied.

  The arguments are the summary message, a dict mapping the volume id
  to the reason and a list of errors not tied to a volume.

  """
  def __init__(self, msg, volume_errors=None, other_errors=None):
    GenericError.__init__(self, msg)
    if volume_errors is None:
      volume_errors = {}
    if other_errors is None:
      other_errors = []
    self.volume_errors = volume_errors
    self.other_errors = other_errors


class OpExecError(GenericError):
  """Error during the execution of a migration phase.

  """


class TunnelError(GenericError):
  """The control channel to the destination failed.

  """


class TunnelTimeoutError(TunnelError):
  """A bounded wait on the control channel expired.

  """


class NoQuorumError(TunnelError):
  """The destination reported that it has no cluster quorum.

  """


class TunnelReplyError(TunnelError):
  """The destination rejected a command sent through the control channel.

  The arguments are the command and the reply text.

  """


class ParseError(GenericError):
  """Generic parse error.

  Raised when unable to parse user input or a destination status line.

  """


# errors should be added above


def FormatError(err):
  """Return a one-line description of an exception.

  L{OpPrereqError} carries an error code as second argument which is
  not part of the message.

  @type err: Exception
  @rtype: str

  """
  if isinstance(err, OpPrereqError) and len(err.args) == 2:
    return str(err.args[0])
  if isinstance(err, GenericError) and err.args:
    return str(err.args[0])
  return str(err)
