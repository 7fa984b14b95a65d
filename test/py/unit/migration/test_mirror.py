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


"""Unit tests for vmmigrate.migration.mirror"""

import pytest

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate.migration import base
from vmmigrate.migration import mirror

import testutils


class _Clock(object):
  def __init__(self):
    self.now = 0.0

  def __call__(self):
    self.now += 1.0
    return self.now


@pytest.fixture
def job():
  return base.MigrationJob(100, "node1", "node2", online=True)


def _Coordinator(job, hv, wait_fn=None):
  sleeps = []
  if wait_fn is None:
    wait_fn = sleeps.append
  return mirror.MirrorCoordinator(job, hv, _sleep_fn=wait_fn,
                                  _time_fn=_Clock())


def _StartAll(coord, drives=("scsi0", "scsi1")):
  for drive in drives:
    coord.Start(drive, "nbd:localhost:10809:exportname=drive-%s" % drive,
                bitmap="repl_%s" % drive, speed=1024)


class TestMirrorCoordinator:

  def test_start(self, job):
    hv = testutils.FakeHypervisor()
    coord = _Coordinator(job, hv)
    _StartAll(coord, drives=["scsi0"])
    assert hv.GetCalls("StartBlockMirror") == [
      (100, "scsi0", "nbd:localhost:10809:exportname=drive-scsi0",
       "repl_scsi0", 1024)]
    assert coord.jobs["scsi0"].state == constants.MIRROR_RUNNING

  def test_start_failure(self, job):
    hv = testutils.FakeHypervisor()
    hv.fail["StartBlockMirror"] = errors.HypervisorError("no such device")
    coord = _Coordinator(job, hv)
    with pytest.raises(errors.OpExecError):
      _StartAll(coord)
    assert not coord.jobs

  def test_cutover_one_per_job(self, job):
    hv = testutils.FakeHypervisor()
    coord = _Coordinator(job, hv)
    _StartAll(coord)
    coord.WaitReady()
    assert all(m.state == constants.MIRROR_READY
               for m in coord.jobs.values())

    coord.Complete()
    cancels = hv.GetCalls("CancelBlockMirror")
    assert len(cancels) == len(coord.jobs) == 2
    assert all(not force for (_, _, force) in cancels)
    assert all(m.state == constants.MIRROR_COMPLETED
               for m in coord.jobs.values())

    # finished jobs are left alone
    coord.Cancel()
    assert len(hv.GetCalls("CancelBlockMirror")) == 2

  def test_no_cutover_while_running(self, job):
    hv = testutils.FakeHypervisor(mirror_ready=False)
    coord = _Coordinator(job, hv)
    _StartAll(coord)
    with pytest.raises(errors.OpExecError) as excinfo:
      coord.Complete()
    assert "not ready" in str(excinfo.value)
    assert not hv.GetCalls("CancelBlockMirror")

  def test_wait_until_ready(self, job):
    hv = testutils.FakeHypervisor(mirror_ready=False)

    def _Wait(_):
      for info in hv.block_jobs.values():
        info["ready"] = True

    coord = _Coordinator(job, hv, wait_fn=_Wait)
    _StartAll(coord)
    coord.WaitReady()
    assert len(hv.GetCalls("QueryBlockJobs")) == 2
    assert "all mirroring jobs are ready" in job.GetLogMessages()

  def test_ready_timeout(self, job):
    hv = testutils.FakeHypervisor(mirror_ready=False)
    coord = _Coordinator(job, hv)
    _StartAll(coord)
    with pytest.raises(errors.OpExecError) as excinfo:
      coord.WaitReady(timeout=10)
    assert "did not get ready" in str(excinfo.value)
    assert any("transferred" in msg for msg in job.GetLogMessages())

  def test_vanished_job(self, job):
    hv = testutils.FakeHypervisor(mirror_ready=False)
    coord = _Coordinator(job, hv)
    _StartAll(coord)
    del hv.block_jobs["drive-scsi1"]
    with pytest.raises(errors.OpExecError) as excinfo:
      coord.WaitReady()
    assert "scsi1: mirroring has been cancelled" in str(excinfo.value)
    assert coord.jobs["scsi1"].state == constants.MIRROR_FAILED

  def test_cancel(self, job):
    hv = testutils.FakeHypervisor(mirror_ready=False)
    coord = _Coordinator(job, hv)
    _StartAll(coord)
    coord.Cancel()
    assert [drive for (_, drive, _) in hv.GetCalls("CancelBlockMirror")] == \
      ["scsi0", "scsi1"]
    assert all(force for (_, _, force) in hv.GetCalls("CancelBlockMirror"))
    assert not hv.block_jobs
    assert not job.had_errors

  def test_cancel_without_jobs(self, job):
    hv = testutils.FakeHypervisor()
    coord = _Coordinator(job, hv)
    coord.Cancel()
    coord.Complete()
    assert not hv.calls

  def test_cancel_logs_failures(self, job):
    hv = testutils.FakeHypervisor()
    coord = _Coordinator(job, hv)
    _StartAll(coord, drives=["scsi0"])
    hv.fail["CancelBlockMirror"] = errors.HypervisorError("gone")
    coord.Cancel(timeout=3)
    assert job.had_errors
    assert coord.jobs["scsi0"].state == constants.MIRROR_CANCELLED
