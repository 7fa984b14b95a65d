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


"""Unit tests for vmmigrate.utils.retry"""

import pytest

from vmmigrate import errors
from vmmigrate import utils


class FakeClock:
  def __init__(self):
    self.time = 1379601882.0
    self.waits = []

  def __call__(self):
    return self.time

  def Wait(self, delay):
    self.waits.append(delay)
    self.time += delay


class TestRetry:

  @pytest.fixture
  def clock(self):
    return FakeClock()

  def test_success_without_retry(self, clock):
    assert utils.Retry(lambda: 42, 1, 10, wait_fn=clock.Wait,
                       _time_fn=clock) == 42
    assert clock.waits == []

  def test_succeeds_after_retries(self, clock):
    state = {"calls": 0}

    def _Fn():
      state["calls"] += 1
      if state["calls"] < 3:
        raise utils.RetryAgain()
      return "done"

    assert utils.Retry(_Fn, 0.5, 10, wait_fn=clock.Wait,
                       _time_fn=clock) == "done"
    assert clock.waits == [0.5, 0.5]

  def test_timeout_keeps_arguments(self, clock):
    def _Fn():
      raise utils.RetryAgain("still busy")

    with pytest.raises(utils.RetryTimeout) as exc_info:
      utils.Retry(_Fn, 1, 3, wait_fn=clock.Wait, _time_fn=clock)
    assert exc_info.value.args == ("still busy", )

  def test_increasing_delay(self, clock):
    def _Fn():
      raise utils.RetryAgain()

    with pytest.raises(utils.RetryTimeout):
      utils.Retry(_Fn, (1, 2, 4), 20, wait_fn=clock.Wait, _time_fn=clock)
    assert clock.waits[:4] == [1, 2, 4, 4]

  def test_nested_loop(self, clock):
    def _Inner():
      raise utils.RetryTimeout()

    with pytest.raises(errors.ProgrammerError):
      utils.Retry(_Inner, 1, 10, wait_fn=clock.Wait, _time_fn=clock)


class TestCountRetry:

  def test_gives_up_once_count_is_used_up(self):
    waits = []
    calls = []

    def _Fn():
      calls.append(1)
      return False

    assert utils.CountRetry(True, _Fn, 5, wait_fn=waits.append) is False
    assert len(calls) == 6
    assert waits == [1, 2, 3, 4, 5]

  def test_returns_expected_value(self):
    values = [None, None, "ok"]
    result = utils.CountRetry(lambda v: v is not None, lambda: values.pop(0),
                              10)
    assert result == "ok"
