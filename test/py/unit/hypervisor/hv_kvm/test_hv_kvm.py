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


"""Unit tests for vmmigrate.hypervisor.hv_kvm"""

import os
from unittest.mock import MagicMock, patch

import pytest

from vmmigrate import errors
from vmmigrate import objects
from vmmigrate.hypervisor import hv_kvm


class TestKvmHypervisor:

  @pytest.fixture
  def qmp(self):
    qmp = MagicMock()
    qmp.__enter__.return_value = qmp
    qmp.__exit__.return_value = False
    return qmp

  @pytest.fixture
  def hv(self, qmp, tmp_path):
    self.sockets = []

    def _QmpCls(path):
      self.sockets.append(path)
      return qmp

    return hv_kvm.KvmHypervisor(
      _qmp_cls=_QmpCls,
      _socket_fn=lambda guest_id: "/run/%s.qmp" % guest_id,
      _pidfile_fn=lambda guest_id: str(tmp_path / ("%s.pid" % guest_id)))

  def test_query_transfer_status(self, hv, qmp):
    qmp.QueryMigrate.return_value = {
      "status": "completed",
      "downtime": 42,
      "ram": {"transferred": 1, "remaining": 0, "total": 1},
      }
    status = hv.QueryTransferStatus(100)
    assert isinstance(status, objects.MigrationStatus)
    assert (status.status, status.downtime) == ("completed", 42)
    assert self.sockets == ["/run/100.qmp"]

  def test_query_failure_is_transient(self, hv, qmp):
    qmp.QueryMigrate.side_effect = errors.HypervisorError("socket gone")
    with pytest.raises(errors.TransientPollError):
      hv.QueryTransferStatus(100)

  def test_capabilities(self, hv, qmp):
    hv.SetCapabilities(100, ["xbzrle", "zero-blocks"])
    qmp.SetMigrateCapabilities.assert_called_once_with({"xbzrle": True,
                                                        "zero-blocks": True})

  def test_transfer_parameters_skip_unset(self, hv, qmp):
    hv.SetTransferParameters(100, objects.TransferParameters(
      downtime_limit=200))
    qmp.SetMigrateParameters.assert_called_once_with({"downtime-limit": 200})

    qmp.reset_mock()
    hv.SetTransferParameters(100, objects.TransferParameters(
      max_bandwidth=1024, downtime_limit=100, cache_size=2048))
    qmp.SetMigrateParameters.assert_called_once_with({
      "max-bandwidth": 1024,
      "downtime-limit": 100,
      "xbzrle-cache-size": 2048,
      })

  def test_block_jobs(self, hv, qmp):
    qmp.QueryBlockJobs.return_value = [
      {"device": "drive-scsi0", "ready": True},
      {"device": "drive-scsi1", "ready": False},
      ]
    jobs = hv.QueryBlockJobs(100)
    assert sorted(jobs) == ["drive-scsi0", "drive-scsi1"]
    assert jobs["drive-scsi0"]["ready"]

  def test_drive_names(self, hv, qmp):
    hv.StartBlockMirror(100, "scsi0", "nbd:unix:/run/100_nbd.migrate:"
                        "exportname=drive-scsi0", bitmap="repl_scsi0",
                        speed=1024)
    qmp.DriveMirror.assert_called_once_with(
      "drive-scsi0", "nbd:unix:/run/100_nbd.migrate:exportname=drive-scsi0",
      bitmap="repl_scsi0", speed=1024)
    hv.CancelBlockMirror(100, "scsi0")
    qmp.BlockJobCancel.assert_called_once_with("drive-scsi0", force=False)
    hv.AddDirtyBitmap(100, "virtio0", "repl_virtio0")
    qmp.AddDirtyBitmap.assert_called_once_with("drive-virtio0", "repl_virtio0")

  def test_not_running_without_pidfile(self, hv):
    assert not hv.IsRunning(100)

  def test_running_checks_command_line(self, hv, tmp_path):
    (tmp_path / "100.pid").write_text("%d\n" % os.getpid())
    process = MagicMock()
    with patch("psutil.Process", return_value=process):
      process.cmdline.return_value = ["kvm", "-id", "100", "-name", "vm"]
      process.status.return_value = "running"
      assert hv.IsRunning(100)
      process.cmdline.return_value = ["kvm", "-id", "101"]
      assert not hv.IsRunning(100)

  def test_stop_not_running(self, hv, qmp):
    hv.StopGuest(100)
    qmp.Quit.assert_not_called()
