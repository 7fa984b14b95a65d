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

import os
import socket
import tempfile
import threading
from typing import Dict

import pytest

from vmmigrate import errors
from vmmigrate import serializer
from vmmigrate.hypervisor.monitor import QmpConnection, QmpMessage
from vmmigrate.hypervisor.monitor import QmpCommandNotSupported

QMP_BANNER_DATA = {
  "QMP": {
    "version": {
      "package": " pve-qemu-kvm ",
      "qemu": {
        "micro": 2,
        "minor": 1,
        "major": 8,
      },
      "capabilities": [],
    },
  }
}

FAKE_QMP_COMMANDS = {}


def simulate_qmp(command: str):
  """Register a function answering the given qmp command.

  @param command: The command on which the function listens
  """

  def decorator(func):
    FAKE_QMP_COMMANDS[command] = func
    return func

  return decorator


def encode_data(data: dict) -> bytes:
  return (serializer.DumpJson(data).rstrip("\n").encode("utf-8") +
          QmpConnection._MESSAGE_END_TOKEN)


def get_supported_commands() -> Dict:
  return {"return": [{"name": cmd} for cmd in FAKE_QMP_COMMANDS]}


@simulate_qmp("query-migrate")
def simulate_query_migrate(sock: socket.socket, arguments: Dict):
  # an asynchronous event arriving before the reply is skipped
  sock.send(encode_data({"event": "MIGRATION", "data": {"status": "active"}}) +
            encode_data({"return": {"status": "active",
                                    "ram": {"transferred": 100,
                                            "remaining": 900,
                                            "total": 1000}}}))


@simulate_qmp("migrate-set-parameters")
def simulate_set_parameters(sock: socket.socket, arguments: Dict):
  sock.send(encode_data({"return": arguments}))


@simulate_qmp("migrate")
def simulate_migrate(sock: socket.socket, arguments: Dict):
  sock.send(encode_data({"error": {"class": "GenericError",
                                   "desc": "migration already running"}}))


class FakeQmpSocket(threading.Thread):

  def __init__(self, socket_path):
    threading.Thread.__init__(self)
    self.received = []
    self.socket_path = socket_path

    self.socket = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    self.socket.bind(self.socket_path)
    self.socket.listen(1)

  def run(self):
    try:
      conn, _ = self.socket.accept()
    except OSError:
      return

    conn.send(encode_data(QMP_BANNER_DATA))

    # qmp_capabilities
    conn.recv(4096)
    conn.send(encode_data({"return": {}}))

    # query-commands
    conn.recv(4096)
    conn.send(encode_data(get_supported_commands()))

    while True:
      data = conn.recv(4096)
      if not data:
        break
      msg = QmpMessage.BuildFromJsonString(data)
      self.received.append(msg.data)
      func = FAKE_QMP_COMMANDS.get(msg["execute"])
      if func is not None:
        func(conn, msg["arguments"] or {})

    conn.close()

  def stop(self):
    self.socket.close()


class TestQmpConnection:

  @pytest.fixture
  def fake_socket_path(self):
    path = tempfile.mktemp(suffix=".qmp")
    yield path
    if os.path.exists(path):
      os.unlink(path)

  @pytest.fixture
  def fake_qmp_socket(self, fake_socket_path):
    fake_qmp_socket = FakeQmpSocket(fake_socket_path)
    fake_qmp_socket.daemon = True
    fake_qmp_socket.start()

    yield fake_qmp_socket

    fake_qmp_socket.stop()

  @pytest.fixture
  def fake_qmp(self, fake_qmp_socket, fake_socket_path):
    qmp = QmpConnection(fake_socket_path)
    yield qmp

    if qmp.is_connected():
      qmp.close()

  def test_connect(self, fake_qmp: QmpConnection):
    fake_qmp.connect()

    assert fake_qmp.version == (8, 1, 2)
    assert fake_qmp.package == "pve-qemu-kvm"
    assert fake_qmp.supported_commands == frozenset(FAKE_QMP_COMMANDS)

  def test_query_skips_events(self, fake_qmp: QmpConnection):
    with fake_qmp:
      result = fake_qmp.QueryMigrate()
    assert result["status"] == "active"
    assert result["ram"]["remaining"] == 900
    assert not fake_qmp.is_connected()

  def test_arguments_are_sent(self, fake_qmp: QmpConnection, fake_qmp_socket):
    with fake_qmp:
      result = fake_qmp.Execute("migrate-set-parameters",
                                {"downtime-limit": 100})
    assert result == {"downtime-limit": 100}
    assert fake_qmp_socket.received[-1] == {
      "execute": "migrate-set-parameters",
      "arguments": {"downtime-limit": 100},
      }

  def test_error_reply(self, fake_qmp: QmpConnection):
    with fake_qmp:
      with pytest.raises(errors.HypervisorError) as exc_info:
        fake_qmp.Migrate("unix:/run/qemu-server/100.migrate")
    assert "migration already running" in str(exc_info.value)

  def test_unsupported_command(self, fake_qmp: QmpConnection):
    with fake_qmp:
      with pytest.raises(QmpCommandNotSupported):
        fake_qmp.Execute("drive-mirror")

  def test_missing_socket(self, tmp_path):
    qmp = QmpConnection(str(tmp_path / "none.qmp"))
    with pytest.raises(errors.HypervisorError):
      qmp.connect()


class TestQmpMessage:

  def test_fields(self):
    msg = QmpMessage({"execute": "cont"})
    assert msg["execute"] == "cont"
    assert msg["arguments"] is None
    msg["arguments"] = {"a": 1}
    assert len(msg) == 2
    assert QmpMessage.BuildFromJsonString(msg.to_bytes()) == msg

  def test_requires_dict(self):
    with pytest.raises(TypeError):
      QmpMessage(["execute"])
