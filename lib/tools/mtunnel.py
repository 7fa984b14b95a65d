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


"""Destination side of the migration control channel.

The source node starts this program over ssh and talks to it through its
standard input and output, one command per line. Every command is answered
with C{OK} or an C{ERR: <message>} line.

"""

import logging
import optparse
import os
import sys

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import pathutils
from vmmigrate import utils
from vmmigrate.hypervisor import hv_kvm


def ParseOptions(args=None):
  """Parses the options passed to the program.

  """
  parser = optparse.OptionParser(usage="%prog",
                                 prog=os.path.basename(sys.argv[0]))
  parser.add_option("-d", "--debug", default=0, action="count",
                    help="Increase debugging level")

  (opts, args) = parser.parse_args(args)
  if args:
    parser.error("No arguments are expected")

  return opts


class TunnelServer(object):
  """Answers the commands of the migration source.

  """
  def __init__(self, stdin, stdout, hypervisor=None,
               _quorum_file=pathutils.QUORUM_FILE):
    if hypervisor is None:
      hypervisor = hv_kvm.KvmHypervisor()
    self._stdin = stdin
    self._stdout = stdout
    self._hv = hypervisor
    self._quorum_file = _quorum_file

  def _Reply(self, line):
    self._stdout.write(line + "\n")
    self._stdout.flush()

  def _Resume(self, args):
    if len(args) != 1:
      raise errors.TunnelError("resume expects exactly one guest id")
    guest_id = args[0]
    if not self._hv.IsRunning(guest_id):
      raise errors.TunnelError("guest %s is not running" % guest_id)
    self._hv.Resume(guest_id)

  def Run(self):
    """Runs the command loop until C{quit} or end of input.

    @rtype: int
    @return: exit code

    """
    if not os.path.exists(self._quorum_file):
      self._Reply(constants.TUNNEL_NO_QUORUM_TOKEN)
      return constants.EXIT_FAILURE

    self._Reply(constants.TUNNEL_READY_TOKEN)
    self._Reply("ver %d" % constants.TUNNEL_VERSION)

    for line in self._stdin:
      parts = line.split()
      if not parts:
        continue
      (cmd, args) = (parts[0], parts[1:])
      logging.debug("Received command '%s'", line.strip())

      if cmd == constants.TUNNEL_CMD_QUIT:
        self._Reply(constants.TUNNEL_REPLY_OK)
        break

      try:
        if cmd == constants.TUNNEL_CMD_RESUME:
          self._Resume(args)
        else:
          raise errors.TunnelError("unknown command '%s'" % cmd)
      except errors.GenericError as err:
        logging.error("Command '%s' failed: %s", cmd, err)
        self._Reply("ERR: %s" % errors.FormatError(err))
      else:
        self._Reply(constants.TUNNEL_REPLY_OK)

    return constants.EXIT_SUCCESS


def Main(args=None):
  """Main routine.

  """
  opts = ParseOptions(args)

  # stdout belongs to the protocol
  utils.SetupLogging(pathutils.MTUNNEL_LOG_FILE, sys.argv[0],
                     debug=opts.debug, stderr_logging=False)

  return TunnelServer(sys.stdin, sys.stdout).Run()
