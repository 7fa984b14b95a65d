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


"""Module encapsulating ssh functionality.

"""


import logging

from vmmigrate import utils
from vmmigrate import errors
from vmmigrate import constants
from vmmigrate import pathutils


def FormatForward(local, remote):
  """Formats one local forward for the C{-L} option.

  @type local: int or string
  @param local: local port or unix socket path
  @type remote: int or string
  @param remote: remote C{host:port} or unix socket path

  """
  return "%s:%s" % (local, remote)


class SshRunner(object):
  """Wrapper for SSH commands towards one node.

  """
  def __init__(self, node_name, address, user=constants.SSH_LOGIN_USER,
               port=None, known_hosts=pathutils.SSH_KNOWN_HOSTS_FILE):
    """Initializes this class.

    @type node_name: str
    @param node_name: name of the node, used as host key alias
    @type address: str
    @param address: address to connect to
    @type user: str
    @param user: user to auth as
    @type port: int or None
    @param port: the SSH port to use, or None to use the default

    """
    self.node_name = node_name
    self.address = address
    self.user = user
    self.port = port
    self.known_hosts = known_hosts

  def _BuildSshOptions(self, batch, forwards, quiet=True):
    """Builds a list with needed SSH options.

    @param batch: same as ssh's batch option
    @param forwards: list of local forwards, see L{FormatForward}
    @param quiet: whether to enable -q to ssh

    @rtype: list
    @return: the list of options ready to use in L{utils.process.RunCmd}

    """
    options = [
      "-oEscapeChar=none",
      "-oHostKeyAlias=%s" % self.node_name,
      "-oGlobalKnownHostsFile=%s" % self.known_hosts,
      ]

    if quiet:
      options.append("-q")

    if self.port:
      options.append("-oPort=%d" % self.port)

    if batch:
      options.append("-oBatchMode=yes")

    if forwards:
      # a forward that cannot be established must fail the whole connection
      options.append("-oExitOnForwardFailure=yes")
      for fwd in forwards:
        options.extend(["-L", fwd])

    return options

  def BuildCmd(self, command, forwards=None, batch=True, quiet=True):
    """Build an ssh command to execute a command on the node.

    @type command: str or list
    @param command: the command; lists are shell-quoted
    @type forwards: list
    @param forwards: local forwards to establish, see L{FormatForward}
    @param batch: if true, ssh will run in batch mode with no prompting
    @param quiet: whether to enable -q to ssh

    @return: the ssh call to run 'command' on the remote host.

    """
    argv = [constants.SSH]
    argv.extend(self._BuildSshOptions(batch, forwards, quiet=quiet))
    argv.append("%s@%s" % (self.user, self.address))

    if isinstance(command, (list, tuple)):
      command = utils.ShellQuoteArgs([str(i) for i in command])
    argv.append(command)

    return argv

  def Run(self, command, **kwargs):
    """Runs a command on the node.

    Keyword arguments are passed to L{utils.RunCmd}.

    @rtype: L{utils.process.RunResult}
    @return: the result as from L{utils.process.RunCmd()}

    """
    return utils.RunCmd(self.BuildCmd(command), **kwargs)

  def VerifyConnection(self):
    """Checks that the node accepts our key.

    @raise errors.OpPrereqError: if the node cannot be reached

    """
    result = self.Run(["/bin/true"])
    if result.failed:
      logging.error("Command %s failed: %s", result.cmd, result.output)
      raise errors.OpPrereqError("Can't connect to destination address"
                                 " using public key", errors.ECODE_ENVIRON)
