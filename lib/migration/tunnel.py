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


"""Control channel to the destination node.

The channel is an ssh process running the tunnel tool on the destination.
Its standard input and output carry a line based protocol; the same ssh
connection optionally forwards the local ports and unix sockets used for
the memory and disk transfers.

"""

import errno
import logging
import os
import re
import select
import socket
import subprocess
import time

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import ssh
from vmmigrate import utils


_VERSION_RE = re.compile(r"^ver (\d+)$")

#: Upper bound for a single wait inside a bounded read
_SELECT_SLICE = 0.1


def GetFreeLocalPort(port_range=constants.MIGRATE_PORT_RANGE,
                     _socket_fn=socket.socket):
  """Finds a local TCP port for forwarding the memory transfer.

  @type port_range: tuple
  @param port_range: first and last port to try, inclusive
  @rtype: int
  @raise errors.TunnelError: if all ports are in use

  """
  (first, last) = port_range
  for port in range(first, last + 1):
    sock = _socket_fn(socket.AF_INET, socket.SOCK_STREAM)
    try:
      sock.bind(("127.0.0.1", port))
    except socket.error as err:
      if err.errno != errno.EADDRINUSE:
        raise
      continue
    finally:
      sock.close()
    return port

  raise errors.TunnelError("Unable to find free migration port in range"
                           " %s-%s" % (first, last))


class ControlChannel(object):
  """A running control channel.

  @ivar version: protocol version announced by the destination

  """
  def __init__(self, argv, log_fn=None, sockets=None, ssh_runner=None,
               _time_fn=time.monotonic, _sleep_fn=time.sleep,
               _wait_fn=utils.WaitForChild):
    """Starts the transport process and performs the handshake.

    @type argv: list
    @param argv: the transport command
    @type log_fn: callable
    @param log_fn: called with (level, message) for job log entries
    @type sockets: list
    @param sockets: unix sockets forwarded by the transport; they must exist
        on both sides once the transport is up
    @type ssh_runner: L{ssh.SshRunner}
    @param ssh_runner: used to remove the forwarded sockets remotely
    @raise errors.TunnelError: if the transport can't be started or the
        handshake fails; the transport is torn down in the latter case

    """
    self.version = 0
    self._log_fn = log_fn
    self._sockets = list(sockets or [])
    self._ssh_runner = ssh_runner
    self._time_fn = _time_fn
    self._sleep_fn = _sleep_fn
    self._wait_fn = _wait_fn
    self._proc = None
    self._buf = b""

    logging.debug("Starting control channel: %s", utils.ShellQuoteArgs(argv))
    try:
      self._proc = subprocess.Popen(argv, stdin=subprocess.PIPE,
                                    stdout=subprocess.PIPE, close_fds=True)
    except EnvironmentError as err:
      raise errors.TunnelError("unable to start tunnel '%s': %s" %
                               (argv[0], err))

    try:
      self._Handshake()
      self._WaitForSockets()
    except Exception: # pylint: disable=W0703
      self.Close(send_quit=False)
      raise

  def _Log(self, level, msg):
    if self._log_fn is not None:
      self._log_fn(level, msg)
    else:
      logging.info(msg)

  def _ReadLine(self, timeout):
    """Reads one line from the transport.

    @rtype: string
    @return: the line without the trailing newline
    @raise errors.TunnelTimeoutError: if no full line arrived in time
    @raise errors.TunnelError: on end of file

    """
    fd = self._proc.stdout.fileno()
    deadline = self._time_fn() + timeout

    while b"\n" not in self._buf:
      remaining = deadline - self._time_fn()
      if remaining <= 0:
        raise errors.TunnelTimeoutError("no reply from tunnel within %s"
                                        " seconds" % timeout)

      (readable, _, _) = select.select([fd], [], [],
                                       min(remaining, _SELECT_SLICE))
      if not readable:
        continue

      data = os.read(fd, 4096)
      if not data:
        raise errors.TunnelError("tunnel closed its output unexpectedly")
      self._buf += data

    (line, self._buf) = self._buf.split(b"\n", 1)
    return line.decode("utf-8", "replace").rstrip("\r")

  def _Handshake(self):
    try:
      hello = self._ReadLine(constants.TUNNEL_HELLO_TIMEOUT)
    except errors.TunnelTimeoutError:
      raise errors.TunnelTimeoutError("no reply to tunnel handshake within"
                                      " %s seconds" %
                                      constants.TUNNEL_HELLO_TIMEOUT)

    if hello == constants.TUNNEL_NO_QUORUM_TOKEN:
      raise errors.NoQuorumError("tunnel replied '%s': destination node has no"
                                 " quorum" % hello)
    if hello != constants.TUNNEL_READY_TOKEN:
      raise errors.TunnelError("tunnel replied '%s' to command 'hello'" %
                               hello)

    try:
      line = self._ReadLine(constants.TUNNEL_VERSION_TIMEOUT)
    except errors.TunnelError as err:
      self._Log("warn", "unable to read tunnel version: %s" % err)
      return

    match = _VERSION_RE.match(line)
    if match:
      self.version = int(match.group(1))
    else:
      self._Log("warn", "unexpected tunnel version line '%s'" % line)

  def _WaitForSockets(self):
    """Waits until all forwarded unix sockets exist.

    """
    if not self._sockets:
      return

    def _CheckSockets():
      return all(os.path.exists(path) for path in self._sockets)

    found = utils.CountRetry(True, _CheckSockets,
                             constants.TUNNEL_SOCKET_TRIES,
                             wait_fn=lambda _:
                               self._sleep_fn(constants.TUNNEL_SOCKET_INTERVAL))
    if not found:
      raise errors.TunnelTimeoutError("unix sockets %s did not appear" %
                                      utils.CommaJoin(self._sockets))

  def IsOpen(self):
    return self._proc is not None

  def WriteCommand(self, command, timeout=constants.TUNNEL_REPLY_TIMEOUT,
                   noerr=False):
    """Sends one command and checks the reply.

    Destinations speaking protocol version 0 do not reply.

    @type command: string
    @param noerr: log a failure instead of raising it
    @raise errors.TunnelError: if the command can't be sent or the reply is
        not C{OK}

    """
    try:
      self._WriteCommand(command, timeout)
    except errors.TunnelError as err:
      if not noerr:
        raise
      self._Log("err", str(err))

  def _WriteCommand(self, command, timeout):
    if self._proc is None:
      raise errors.TunnelError("tunnel is not open")

    fd = self._proc.stdin.fileno()
    (_, writable, _) = select.select([], [fd], [],
                                     constants.TUNNEL_WRITE_TIMEOUT)
    if not writable:
      raise errors.TunnelTimeoutError("writing to tunnel timed out")

    try:
      self._proc.stdin.write(("%s\n" % command).encode("utf-8"))
      self._proc.stdin.flush()
    except EnvironmentError as err:
      raise errors.TunnelError("writing to tunnel failed: %s" % err)

    if self.version < 1:
      return

    try:
      reply = self._ReadLine(timeout)
    except errors.TunnelTimeoutError:
      raise errors.TunnelTimeoutError("no reply to command '%s' within %s"
                                      " seconds" % (command, timeout))

    if reply != constants.TUNNEL_REPLY_OK:
      raise errors.TunnelReplyError("tunnel replied '%s' to command '%s'" %
                                    (reply, command), command, reply)

  def Close(self, send_quit=True):
    """Shuts the channel down.

    Problems are logged, never raised. Calling this on a closed channel does
    nothing.

    """
    if self._proc is None:
      return

    proc = self._proc

    if send_quit:
      try:
        self._WriteCommand(constants.TUNNEL_CMD_QUIT,
                           constants.TUNNEL_QUIT_TIMEOUT)
      except errors.TunnelError as err:
        self._Log("err", "sending quit to tunnel failed: %s" % err)

    self._proc = None

    for stream in (proc.stdin, proc.stdout):
      try:
        stream.close()
      except EnvironmentError as err:
        logging.debug("Closing tunnel pipe failed: %s", err)

    if not self._wait_fn(proc, constants.TUNNEL_EXIT_TIMEOUT):
      proc.terminate()
      if not self._wait_fn(proc, constants.TUNNEL_TERM_TIMEOUT):
        proc.kill()
        if not self._wait_fn(proc, constants.TUNNEL_TERM_TIMEOUT):
          self._Log("err", "unable to reap tunnel process %s" % proc.pid)

    self._RemoveSockets()

  def _RemoveSockets(self):
    if not self._sockets:
      return

    for path in self._sockets:
      try:
        utils.RemoveFile(path)
      except EnvironmentError as err:
        self._Log("err", "removing local socket %s failed: %s" % (path, err))

    if self._ssh_runner is not None:
      result = self._ssh_runner.Run(["rm", "-f"] + self._sockets)
      if result.failed:
        self._Log("err", "removing remote sockets failed: %s" %
                  result.fail_reason)


def OpenTunnel(ssh_runner, log_fn=None, forwards=None, sockets=None,
               _cls=ControlChannel):
  """Opens the control channel towards a node.

  @type ssh_runner: L{ssh.SshRunner}
  @type forwards: list
  @param forwards: (local, remote) pairs to forward through the transport;
      each side is a port, a C{host:port} or a unix socket path
  @type sockets: list
  @param sockets: forwarded unix socket paths that must show up locally
  @rtype: L{ControlChannel}

  """
  fwd_specs = [ssh.FormatForward(local, remote)
               for (local, remote) in forwards or []]
  argv = ssh_runner.BuildCmd([constants.MTUNNEL_TOOL], forwards=fwd_specs)
  return _cls(argv, log_fn=log_fn, sockets=sockets, ssh_runner=ssh_runner)
