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


"""Unit tests for vmmigrate.migration.tunnel"""

import errno
import os
import signal
import socket

import pytest

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import ssh
from vmmigrate.migration import tunnel

import testutils


_REPLYING_TUNNEL = ("echo 'tunnel online'; echo 'ver 1';"
                    " while read cmd; do echo %s; done")


class FakeClock(object):
  """Clock advancing by a fixed step on every reading."""

  def __init__(self, step):
    self.now = 0
    self.step = step

  def __call__(self):
    value = self.now
    self.now += self.step
    return value


def _Channel(script, **kwargs):
  return tunnel.ControlChannel(["sh", "-c", script], **kwargs)


class TestControlChannel:

  def test_handshake_timeout(self):
    log = []
    with pytest.raises(errors.TunnelTimeoutError) as excinfo:
      tunnel.ControlChannel(["cat"], log_fn=lambda *args: log.append(args),
                            _time_fn=FakeClock(61))
    assert "handshake within 60 seconds" in str(excinfo.value)

  def test_no_quorum(self):
    with pytest.raises(errors.NoQuorumError):
      tunnel.ControlChannel(["echo", constants.TUNNEL_NO_QUORUM_TOKEN])

  def test_wrong_hello(self):
    with pytest.raises(errors.TunnelError) as excinfo:
      tunnel.ControlChannel(["echo", "hello there"])
    assert "hello there" in str(excinfo.value)

  def test_version_missing(self):
    log = []
    channel = _Channel("echo 'tunnel online'",
                       log_fn=lambda *args: log.append(args))
    try:
      assert channel.version == 0
      assert log and log[0][0] == "warn"
    finally:
      channel.Close(send_quit=False)
    assert not channel.IsOpen()

  def test_commands_acknowledged(self):
    channel = _Channel(_REPLYING_TUNNEL % "OK")
    assert channel.version == 1
    channel.WriteCommand("resume 100")
    channel.Close()
    assert not channel.IsOpen()
    # closing twice does nothing
    channel.Close()

  def test_command_rejected(self):
    log = []
    channel = _Channel(_REPLYING_TUNNEL % "'ERR: not running'",
                       log_fn=lambda *args: log.append(args))
    try:
      with pytest.raises(errors.TunnelReplyError) as excinfo:
        channel.WriteCommand("resume 100")
      assert excinfo.value.args[2] == "ERR: not running"

      channel.WriteCommand("resume 100", noerr=True)
      assert log[-1][0] == "err"
      assert "ERR: not running" in log[-1][1]
    finally:
      channel.Close(send_quit=False)

  def test_write_after_close(self):
    channel = _Channel(_REPLYING_TUNNEL % "OK")
    channel.Close()
    with pytest.raises(errors.TunnelError):
      channel.WriteCommand("resume 100")

  def test_missing_sockets(self, tmpdir):
    sleeps = []
    path = str(tmpdir.join("100.migrate"))
    with pytest.raises(errors.TunnelTimeoutError):
      _Channel(_REPLYING_TUNNEL % "OK", sockets=[path],
               _sleep_fn=sleeps.append)
    assert len(sleeps) == constants.TUNNEL_SOCKET_TRIES

  def test_start_failure(self):
    with pytest.raises(errors.TunnelError) as excinfo:
      tunnel.ControlChannel(["/nonexistent/ssh", "node2"])
    assert "/nonexistent/ssh" in str(excinfo.value)


class _ChildWait(object):
  """Reaps the tunnel process only from the given attempt on."""

  def __init__(self, reap_at=None):
    self.reap_at = reap_at
    self.timeouts = []

  def __call__(self, proc, timeout):
    self.timeouts.append(timeout)
    if self.reap_at is None or len(self.timeouts) < self.reap_at:
      return False
    proc.wait()
    return True


_STUBBORN_TUNNEL = ("trap '' TERM PIPE; echo 'tunnel online'; echo 'ver 1';"
                    " while true; do read cmd || sleep 1; echo OK; done")


class TestControlChannelClose:

  def test_escalates_to_kill(self):
    wait = _ChildWait(reap_at=3)
    channel = _Channel(_STUBBORN_TUNNEL, _wait_fn=wait)
    proc = channel._proc
    channel.Close()
    assert wait.timeouts == [constants.TUNNEL_EXIT_TIMEOUT,
                             constants.TUNNEL_TERM_TIMEOUT,
                             constants.TUNNEL_TERM_TIMEOUT]
    assert proc.returncode == -signal.SIGKILL
    assert not channel.IsOpen()

  def test_terminate_is_enough(self):
    wait = _ChildWait(reap_at=2)
    channel = _Channel(_REPLYING_TUNNEL % "OK" + "; exec sleep 60",
                       _wait_fn=wait)
    proc = channel._proc
    channel.Close()
    assert wait.timeouts == [constants.TUNNEL_EXIT_TIMEOUT,
                             constants.TUNNEL_TERM_TIMEOUT]
    assert proc.returncode == -signal.SIGTERM

  def test_reap_failure_is_logged(self):
    log = []
    channel = _Channel(_STUBBORN_TUNNEL, _wait_fn=_ChildWait(),
                       log_fn=lambda *args: log.append(args))
    proc = channel._proc
    try:
      channel.Close()
      assert log[-1][0] == "err"
      assert "unable to reap tunnel process %s" % proc.pid in log[-1][1]
      assert not channel.IsOpen()
    finally:
      proc.kill()
      proc.wait()

  def test_sockets_removed(self, tmpdir):
    paths = [str(tmpdir.join("100.migrate")),
             str(tmpdir.join("100_nbd.migrate"))]
    for path in paths:
      tmpdir.join(os.path.basename(path)).write("")

    runner = testutils.FakeSsh()
    channel = _Channel(_REPLYING_TUNNEL % "OK", sockets=paths,
                       ssh_runner=runner)
    channel.Close()
    assert not any(os.path.exists(path) for path in paths)
    assert runner.commands == [["rm", "-f"] + paths]

  def test_remote_socket_removal_failure(self, tmpdir):
    path = str(tmpdir.join("100.migrate"))
    tmpdir.join("100.migrate").write("")

    runner = testutils.FakeSsh()
    runner.handlers[("rm", "-f")] = \
      lambda cmd, **_: testutils.MakeResult(cmd, "denied", exit_code=1)
    log = []
    channel = _Channel(_REPLYING_TUNNEL % "OK", sockets=[path],
                       ssh_runner=runner,
                       log_fn=lambda *args: log.append(args))
    channel.Close()
    assert not os.path.exists(path)
    assert log[-1][0] == "err"
    assert log[-1][1].startswith("removing remote sockets failed")



class TestOpenTunnel:

  def test_forwards(self):
    calls = []

    def _Cls(argv, **kwargs):
      calls.append((argv, kwargs))
      return "channel"

    runner = ssh.SshRunner("node2", "10.0.0.2")
    result = tunnel.OpenTunnel(runner, forwards=[(60001, "localhost:60001"),
                                                 ("/run/a", "/run/a")],
                               sockets=["/run/a"], _cls=_Cls)
    assert result == "channel"

    (argv, kwargs) = calls[0]
    assert argv[-1] == constants.MTUNNEL_TOOL
    assert "root@10.0.0.2" in argv
    assert "-oExitOnForwardFailure=yes" in argv
    idx = argv.index("-L")
    assert argv[idx + 1] == "60001:localhost:60001"
    assert argv[idx + 3] == "/run/a:/run/a"
    assert kwargs["sockets"] == ["/run/a"]
    assert kwargs["ssh_runner"] is runner

  def test_no_forwards(self):
    calls = []
    runner = ssh.SshRunner("node2", "10.0.0.2")
    tunnel.OpenTunnel(runner, _cls=lambda argv, **kw: calls.append(argv))
    assert "-L" not in calls[0]


class _FakeSocket(object):
  def __init__(self, used):
    self.used = used
    self.closed = False

  def bind(self, addr):
    if addr[1] in self.used:
      raise socket.error(errno.EADDRINUSE, "in use")

  def close(self):
    self.closed = True


class TestGetFreeLocalPort:

  def test_first_free(self):
    socks = []

    def _SocketFn(*_):
      sock = _FakeSocket(set([60000, 60001]))
      socks.append(sock)
      return sock

    assert tunnel.GetFreeLocalPort(_socket_fn=_SocketFn) == 60002
    assert len(socks) == 3
    assert all(sock.closed for sock in socks)

  def test_all_used(self):
    with pytest.raises(errors.TunnelError):
      tunnel.GetFreeLocalPort(port_range=(1, 3),
                              _socket_fn=lambda *_: _FakeSocket(set([1, 2, 3])))

  def test_other_error(self):
    class _Denied(_FakeSocket):
      def bind(self, addr):
        raise socket.error(errno.EACCES, "denied")

    with pytest.raises(socket.error):
      tunnel.GetFreeLocalPort(_socket_fn=lambda *_: _Denied(set()))
