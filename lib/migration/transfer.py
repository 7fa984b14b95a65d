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


"""Monitoring of the live memory transfer.

"""

import time

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import objects
from vmmigrate import utils
from vmmigrate.migration import base


def ComputeTransferParameters(conf, bwlimit=None):
  """Computes the tunables of a memory transfer.

  @type conf: L{objects.GuestConfig}
  @param conf: the guest configuration, which may override the speed
      (C{migrate_speed}, MiB/s) and the downtime (C{migrate_downtime},
      seconds)
  @type bwlimit: int or None
  @param bwlimit: global migration bandwidth limit in KiB/s
  @rtype: L{objects.TransferParameters}

  """
  limits = []
  if bwlimit:
    limits.append(int(bwlimit))
  if conf.get("migrate_speed"):
    limits.append(int(conf["migrate_speed"]) * 1024)

  if limits:
    speed = min(limits)
  else:
    speed = constants.MIGRATION_DEFAULT_SPEED * 1024

  downtime = conf.get("migrate_downtime")
  if downtime is None:
    downtime = constants.MIGRATION_DEFAULT_DOWNTIME

  cache_size = (conf.GetMemory() * 1024 * 1024 //
                constants.MIGRATION_CACHE_RATIO)

  return objects.TransferParameters(
    max_bandwidth=speed * 1024,
    downtime_limit=int(float(downtime) * 1000),
    cache_size=utils.RoundPowerOfTwo(cache_size))


class LiveTransferMonitor(object):
  """Drives the memory transfer of a running guest.

  @ivar params: the parameters in effect; the downtime limit is raised
      while the transfer does not make progress

  """
  def __init__(self, job, hypervisor, _sleep_fn=time.sleep,
               _time_fn=time.monotonic):
    self.job = job
    self.params = None
    self.stall_adjustments = 0
    self._hv = hypervisor
    self._sleep_fn = _sleep_fn
    self._time_fn = _time_fn
    self._trigger_error = None

  def Configure(self, params,
                capabilities=constants.MIGRATION_CAPABILITIES):
    """Enables the capabilities and applies the transfer parameters.

    Neither step is fatal; failures are logged.

    """
    job = self.job
    self.params = params.Copy()

    job.Log(base.LOG_INFO, "set migration capabilities")
    try:
      self._hv.SetCapabilities(job.guest_id, capabilities)
    except errors.HypervisorError as err:
      job.Log(base.LOG_WARN, "setting migration capabilities failed: %s" % err)

    job.Log(base.LOG_INFO, "migration speed limit: %s B/s" %
            params.max_bandwidth)
    job.Log(base.LOG_INFO, "migration downtime limit: %s ms" %
            params.downtime_limit)
    job.Log(base.LOG_INFO, "migration cachesize: %s B" % params.cache_size)
    try:
      self._hv.SetTransferParameters(job.guest_id, params)
    except errors.HypervisorError as err:
      job.Log(base.LOG_INFO, "migrate-set-parameters error: %s" % err)

  def Trigger(self, uri):
    """Starts the transfer.

    A failure is only remembered; it is reported if the status that
    follows makes no sense.

    """
    job = self.job
    job.Log(base.LOG_INFO, "start migrate command to %s" % uri)
    try:
      self._hv.TriggerTransfer(job.guest_id, uri)
    except errors.HypervisorError as err:
      self._trigger_error = err
      job.Log(base.LOG_INFO, "migrate uri => %s failed: %s" % (uri, err))

  def Cancel(self):
    job = self.job
    job.Log(base.LOG_INFO, "migrate_cancel")
    try:
      self._hv.CancelTransfer(job.guest_id)
    except errors.HypervisorError as err:
      job.Log(base.LOG_INFO, "migrate_cancel error: %s" % err)

  def _RaiseDowntime(self):
    job = self.job
    self.params.downtime_limit *= 2
    self.stall_adjustments += 1
    job.Log(base.LOG_INFO, "auto-increased downtime to continue migration:"
            " %s ms" % self.params.downtime_limit)
    try:
      self._hv.SetTransferParameters(
        job.guest_id,
        objects.TransferParameters(downtime_limit=self.params.downtime_limit))
    except errors.HypervisorError as err:
      job.Log(base.LOG_INFO, "migrate-set-parameters error: %s" % err)

  def _LogProgress(self, status):
    job = self.job
    job.Log(base.LOG_INFO, "migration status: %s (transferred %s, remaining"
            " %s), total %s" % (status.status, status.transferred_ram or 0,
                                 status.remaining_ram or 0,
                                 status.total_ram or 0))
    cache = status.xbzrle_cache or {}
    if cache.get("cache-size"):
      job.Log(base.LOG_INFO, "migration xbzrle cachesize: %s transferred %s"
              " pages %s cachemiss %s overflow %s" %
              (cache["cache-size"], cache.get("bytes", 0),
               cache.get("pages", 0), cache.get("cache-miss", 0),
               cache.get("overflow", 0)))

  def WaitForCompletion(self):
    """Polls the transfer status until the transfer ends.

    The poll interval drops once the remaining memory is below the average
    amount transferred per poll. Whenever the remaining memory does not
    shrink (or is zero without the transfer having completed) for more than
    L{constants.MIGRATION_MAX_STALLED_SAMPLES} consecutive samples, the
    downtime limit is doubled.

    @rtype: L{objects.MigrationStatus}
    @return: the final status
    @raise errors.OpExecError: if the transfer fails

    """
    job = self.job
    start = self._time_fn()
    interval = constants.MIGRATION_POLL_INTERVAL
    polls = 0
    query_failures = 0
    last_transferred = 0
    last_remaining = None
    stalled = 0

    while True:
      polls += 1
      avg_transferred = 0
      if last_transferred:
        avg_transferred = last_transferred / polls

      self._sleep_fn(interval)

      try:
        status = self._hv.QueryTransferStatus(job.guest_id)
      except errors.TransientPollError as err:
        query_failures += 1
        job.Log(base.LOG_INFO, "query migrate failed: %s" % err)
        if query_failures <= constants.MIGRATION_MAX_QUERY_FAILURES:
          self._sleep_fn(constants.MIGRATION_QUERY_RETRY_DELAY)
          continue
        raise errors.OpExecError("too many query migrate failures - aborting")

      if status.status == constants.HV_MIGRATION_SETUP:
        self._sleep_fn(constants.MIGRATION_QUERY_RETRY_DELAY)
        continue

      if status.status not in constants.HV_MIGRATION_VALID_STATUSES:
        if self._trigger_error is not None:
          raise errors.OpExecError("migrate failed: %s" % self._trigger_error)
        raise errors.OpExecError("unable to parse migration status '%s' -"
                                 " aborting" % status.status)

      self._trigger_error = None
      query_failures = 0

      if status.status == constants.HV_MIGRATION_COMPLETED:
        delay = self._time_fn() - start
        if delay > 0:
          transferred = status.transferred_ram or status.total_ram or 0
          job.Log(base.LOG_INFO, "migration speed: %.2f MB/s - downtime %s ms"
                  % (transferred / delay / (1024 * 1024),
                     status.downtime or 0))

      if status.status in constants.HV_MIGRATION_FAILED_STATUSES:
        job.Log(base.LOG_INFO, "migration status error: %s" % status.status)
        raise errors.OpExecError("migration status error: %s - aborting" %
                                 status.status)

      if status.status != constants.HV_MIGRATION_ACTIVE:
        job.Log(base.LOG_INFO, "migration status: %s" % status.status)
        return status

      if status.transferred_ram != last_transferred:
        remaining = status.remaining_ram or 0
        if avg_transferred and remaining < avg_transferred:
          interval = constants.MIGRATION_FAST_POLL_INTERVAL

        self._LogProgress(status)

        if ((last_remaining and remaining >= last_remaining) or
            remaining == 0):
          stalled += 1
        else:
          stalled = 0
        last_remaining = remaining

        if stalled > constants.MIGRATION_MAX_STALLED_SAMPLES:
          stalled = 0
          self._RaiseDowntime()

      last_transferred = status.transferred_ram or 0

  def Run(self, uri):
    """Triggers the transfer and waits for it to complete.

    """
    self.Trigger(uri)
    return self.WaitForCompletion()
