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


"""Migration of KVM guests between nodes.

"""

import time

from vmmigrate import config
from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import objects
from vmmigrate import ssh
from vmmigrate import storage
from vmmigrate import utils
from vmmigrate.hypervisor import hv_kvm
from vmmigrate.migration import base
from vmmigrate.migration import destination
from vmmigrate.migration import disks
from vmmigrate.migration import mirror
from vmmigrate.migration import replication
from vmmigrate.migration import transfer
from vmmigrate.migration import tunnel


#: Timeout for the resume command sent through the control channel
_RESUME_TIMEOUT = 30


class QemuMigration(base.MigrationRunner):
  """Migrates one KVM guest to another node.

  """
  def __init__(self, job, cluster_cfg, guest_store=None, storage_mgr=None,
               hypervisor=None, replication_bridge=None,
               _ssh_cls=ssh.SshRunner, _tunnel_fn=tunnel.OpenTunnel,
               _port_fn=tunnel.GetFreeLocalPort, _sleep_fn=time.sleep,
               _time_fn=time.monotonic):
    base.MigrationRunner.__init__(self, job, _time_fn=_time_fn)
    if guest_store is None:
      guest_store = config.GuestConfigStore()
    if storage_mgr is None:
      storage_mgr = storage.StorageManager(cluster_cfg, job.source)
    if hypervisor is None:
      hypervisor = hv_kvm.KvmHypervisor()
    if replication_bridge is None:
      replication_bridge = replication.ReplicationBridge(cluster_cfg,
                                                         storage_mgr,
                                                         hypervisor)

    self._cluster_cfg = cluster_cfg
    self._store = guest_store
    self._storage = storage_mgr
    self._hv = hypervisor
    self._replication = replication_bridge
    self._disks = disks.StorageSyncCoordinator(job, storage_mgr,
                                               replication_bridge)
    self._ssh_cls = _ssh_cls
    self._tunnel_fn = _tunnel_fn
    self._port_fn = _port_fn
    self._sleep_fn = _sleep_fn
    self._start_errors = []

  def _LockGuest(self):
    return self._store.LockGuest(self.job.guest_id)

  def _IsSecure(self):
    return self.job.migration_type != constants.MIGRATION_TYPE_INSECURE

  def _RunRemote(self, cmd, errmsg, **kwargs):
    """Runs a command on the destination, logging a failure.

    @rtype: boolean
    @return: whether the command succeeded

    """
    job = self.job
    result = job.ssh.Run(cmd, **kwargs)
    if result.failed:
      job.Log(base.LOG_ERR, "%s: %s" % (errmsg, result.output.strip() or
                                        result.fail_reason))
      return False
    return True

  def _RestoreLocalConfig(self):
    """Clears the migrate lock and undoes the bridge mapping.

    """
    job = self.job
    conf = job.config
    if conf is None:
      return
    changed = conf.pop("lock") is not None
    for (key, value) in job.original_nets.items():
      conf[key] = value
      changed = True
    job.original_nets = {}
    if not changed:
      return
    try:
      self._store.Write(conf)
    except errors.GenericError as err:
      job.Log(base.LOG_ERR, "failed to clear migrate lock: %s" % err)

  def Prepare(self):
    job = self.job

    conf = job.config = self._store.Load(job.source, job.guest_id)

    if job.migration_type is None:
      job.migration_type = self._cluster_cfg.GetMigrationType()
    if job.migration_type not in constants.MIGRATION_TYPES:
      raise errors.OpPrereqError("Invalid migration type '%s'" %
                                 job.migration_type, errors.ECODE_INVAL)
    if job.migration_network is None:
      job.migration_network = self._cluster_cfg.GetMigrationNetwork()

    job.replication_job = self._replication.FindJob(job.guest_id, job.target)
    job.is_replicated = self._replication.IsReplicated(job.guest_id)
    if (job.replication_job and
        job.replication_job.get("remove_job") is not None):
      raise errors.OpPrereqError("refusing to migrate replicated VM whose"
                                 " replication job is marked for removal",
                                 errors.ECODE_STATE)

    try:
      self._store.CheckLock(conf)
    except errors.LockError as err:
      raise errors.OpPrereqError(str(err), errors.ECODE_STATE)

    running = self._hv.IsRunning(job.guest_id)
    if running:
      if not job.online:
        raise errors.OpPrereqError("can't migrate running VM without"
                                   " --online", errors.ECODE_STATE)
      if job.is_replicated and not job.replication_job:
        if job.force:
          job.Log(base.LOG_WARN, "WARNING: Node '%s' is not a replication"
                  " target. Existing replication jobs will fail after"
                  " migration!" % job.target)
        else:
          raise errors.OpPrereqError("Cannot live-migrate replicated VM to"
                                     " node '%s' - not a replication target."
                                     " Use 'force' to override." % job.target,
                                     errors.ECODE_STATE)
      job.force_machine = conf.get("machine")

    local_res = conf.GetLocalResources()
    if local_res:
      if running or not job.force:
        raise errors.OpPrereqError("can't migrate VM which uses local"
                                   " devices: %s" %
                                   utils.CommaJoin(local_res),
                                   errors.ECODE_STATE)
      job.Log(base.LOG_INFO, "migrating VM which uses local devices")

    for volid in disks.GetGuestVolumes(conf):
      (storeid, _) = storage.ParseVolumeId(volid)
      target_sid = config.MapId(job.storage_map, storeid)
      backend = self._storage.CheckNode(storeid, job.source)
      self._storage.CheckNode(target_sid, job.target)
      if backend.IsShared() and not backend.CheckConnection():
        job.Log(base.LOG_WARN, "Used shared storage '%s' is not online on"
                " source node!" % storeid)

    job.target_address = self._cluster_cfg.GetNodeAddress(
      job.target, job.migration_network)
    job.ssh = self._ssh_cls(job.target, job.target_address)
    job.ssh.VerifyConnection()

    return running

  def Phase1(self):
    job = self.job
    conf = job.config

    job.Log(base.LOG_INFO, "starting migration of VM %s to node '%s' (%s)" %
            (job.guest_id, job.target, job.target_address))

    job.original_nets = conf.MapBridges(
      lambda bridge: config.MapId(job.bridge_map, bridge))
    for key in sorted(job.original_nets):
      job.Log(base.LOG_INFO, "network interface '%s' changed to '%s'" %
              (key, conf[key]))

    conf["lock"] = constants.LOCK_MIGRATE
    self._store.Write(conf)

    self._disks.Sync()

    # the destination allocates its volumes from the corrected sizes
    self._store.Write(conf)

  def Phase1Cleanup(self):
    job = self.job
    job.Log(base.LOG_INFO, "aborting phase 1 - cleanup resources")

    self._RestoreLocalConfig()

    for volid in job.volumes:
      job.Log(base.LOG_ERR, "found stale volume copy '%s' on node '%s'" %
              (volid, job.target))

    self._replication.RemoveBitmaps(job)

  def _HandleDestinationLine(self, line):
    """Records what the destination reports while starting the guest.

    """
    job = self.job
    event = destination.ParseLine(line)
    if event is None:
      return

    kind = event.kind
    if kind in destination.EV_MIGRATION_ALL:
      if (kind == destination.EV_MIGRATION_UNIX and
          str(event.GetSocketGuestId()) != str(job.guest_id)):
        self._start_errors.append("unexpected migration socket '%s'" %
                                  event.path)
        return
      job.migrate_uri = event.uri
      job.migrate_host = event.host
      job.migrate_port = event.port
      job.migrate_socket = event.path
    elif kind == destination.EV_SPICE_PORT:
      job.spice_port = event.port
    elif kind in destination.EV_NBD_ALL:
      if kind == destination.EV_NBD_UNIX:
        if str(event.GetSocketGuestId()) != str(job.guest_id):
          self._start_errors.append("unexpected NBD socket '%s'" % event.path)
          return
        job.nbd_sockets.append(event.path)
      job.target_drives[event.drive] = objects.TargetDrive(
        drive=event.drive, drivestr=event.drivestr, nbd_uri=event.uri)
      job.stop_nbd = True
    elif kind == destination.EV_REPLICATED:
      job.target_replicated[event.volid] = event.drive
    elif kind == destination.EV_QEMU_MESSAGE:
      job.Log(base.LOG_INFO, "[%s] %s" % (job.target, event.message))

  def _StartRemoteGuest(self):
    """Starts the guest on the destination, waiting for the migration.

    """
    job = self.job

    cmd = [constants.VM_TOOL, "start", str(job.guest_id), "--skiplock",
           "--migratedfrom", job.source, "--migration_type",
           job.migration_type]
    if job.migration_network:
      cmd.extend(["--migration_network", job.migration_network])
    if self._IsSecure():
      cmd.extend(["--stateuri", "unix"])
    else:
      cmd.extend(["--stateuri", "tcp"])
    if job.force_machine:
      cmd.extend(["--machine", job.force_machine])
    if job.online_local_volumes:
      cmd.extend(["--targetstorage",
                  config.FormatIdMap(job.storage_map) or "1"])

    lines = [job.spice_ticket or "",
             "nbd_protocol_version: %d" % constants.NBD_PROTOCOL_VERSION]
    online_replicated = 0
    for volid in job.online_local_volumes:
      if volid in job.replicated_volumes:
        online_replicated += 1
        lines.append("replicated_volume: %s" % volid)

    def _LogStderr(line):
      job.Log(base.LOG_INFO, "[%s] %s" % (job.target, line))

    job.remote_started = True
    result = job.ssh.Run(cmd, input_data="\n".join(lines) + "\n",
                         output_fn=self._HandleDestinationLine,
                         error_fn=_LogStderr)
    if result.failed:
      raise errors.OpExecError("command '%s' failed: %s" %
                               (utils.ShellQuoteArgs(cmd), result.fail_reason))
    if self._start_errors:
      raise errors.OpExecError(utils.CommaJoin(self._start_errors))
    if not job.migrate_uri:
      raise errors.OpExecError("unable to detect remote migration address")

    if len(job.target_replicated) != online_replicated:
      raise errors.OpExecError("number of replicated disks on source and"
                               " target node do not match - target node too"
                               " old?")

  def _OpenTunnel(self):
    """Opens the control channel, forwarding the transfer endpoints.

    """
    job = self.job
    forwards = []
    sockets = []

    if self._IsSecure():
      if job.migrate_uri.startswith("unix:"):
        for path in [job.migrate_socket] + job.nbd_sockets:
          forwards.append((path, path))
          sockets.append(path)
      elif job.migrate_uri.startswith("tcp:"):
        if job.migrate_host == "localhost":
          local_port = self._port_fn()
          forwards.append((local_port, "localhost:%s" % job.migrate_port))
          job.migrate_uri = "tcp:localhost:%s" % local_port
      else:
        raise errors.OpExecError("unsupported protocol in migration URI: %s" %
                                 job.migrate_uri)

    job.tunnel = self._tunnel_fn(job.ssh, log_fn=job.Log, forwards=forwards,
                                 sockets=sockets)
    job.Log(base.LOG_INFO, "ssh tunnel ver %s" % job.tunnel.version)

  def _StartMirrors(self):
    job = self.job
    if len(job.target_drives) != len(job.online_local_volumes):
      raise errors.OpExecError("number of local volumes to mirror (%d) does"
                               " not match the drives exported by the"
                               " target (%d)" %
                               (len(job.online_local_volumes),
                                len(job.target_drives)))

    job.mirror = mirror.MirrorCoordinator(job, self._hv,
                                          _sleep_fn=self._sleep_fn,
                                          _time_fn=self._time_fn)

    for drive in sorted(job.target_drives):
      target = job.target_drives[drive]
      source_volid = job.config.GetDrive(drive).file
      target_volid = objects.ParseDrive(drive, target.drivestr).file

      storeids = [storage.ParseVolumeId(source_volid)[0]]
      if not storage.IsPathVolume(target_volid):
        storeids.append(storage.ParseVolumeId(target_volid)[0])
      bwlimit = self._storage.GetBandwidthLimit(constants.BWLIMIT_MIGRATION,
                                                storeids, override=job.bwlimit)
      speed = None
      if bwlimit:
        speed = bwlimit * 1024

      bitmap = job.bitmaps.get(drive)
      job.mirror.Start(drive, target.nbd_uri,
                       bitmap=bitmap and bitmap.name or None, speed=speed)
      job.volume_map[source_volid] = target_volid

    job.mirror.WaitReady()

  def Phase2(self):
    job = self.job
    conf = job.config

    job.Log(base.LOG_INFO, "starting VM %s on remote node '%s'" %
            (job.guest_id, job.target))

    if conf.UsesSpice():
      job.spice_ticket = self._hv.QuerySpice(job.guest_id).get("ticket")

    self._StartRemoteGuest()
    job.Log(base.LOG_INFO, "start remote tunnel")
    self._OpenTunnel()

    if job.online_local_volumes:
      self._StartMirrors()

    bwlimit = self._storage.GetBandwidthLimit(constants.BWLIMIT_MIGRATION, [],
                                              override=job.bwlimit)
    params = transfer.ComputeTransferParameters(conf, bwlimit)

    job.transfer = transfer.LiveTransferMonitor(job, self._hv,
                                                _sleep_fn=self._sleep_fn,
                                                _time_fn=self._time_fn)
    job.transfer.Configure(params)

    if job.spice_port:
      job.Log(base.LOG_INFO, "spice client_migrate_info")
      try:
        self._hv.SetSpiceMigrateInfo(job.guest_id, job.target_address,
                                     job.spice_port)
      except errors.HypervisorError as err:
        job.Log(base.LOG_INFO, "client_migrate_info error: %s" % err)

    job.transfer.Run(job.migrate_uri)

  def _StopRemoteGuest(self):
    job = self.job
    if not job.remote_started:
      return
    if self._RunRemote([constants.VM_TOOL, "stop", str(job.guest_id),
                        "--skiplock", "--migratedfrom", job.source],
                       "failed to stop VM on node '%s'" % job.target):
      job.remote_started = False

  def _CloseTunnel(self):
    job = self.job
    if job.tunnel is not None:
      job.tunnel.Close()
      job.tunnel = None

  def Phase2Cleanup(self):
    job = self.job
    job.Log(base.LOG_INFO, "aborting phase 2 - cleanup resources")

    if job.transfer is not None:
      job.transfer.Cancel()
      job.transfer = None

    self._RestoreLocalConfig()

    if job.mirror is not None:
      job.mirror.Cancel()

    self._replication.RemoveBitmaps(job)

    self._StopRemoteGuest()

    # the volumes are in use by the destination guest until it is stopped
    self._disks.CleanupRemoteDisks()
    job.target_drives = {}

    self._CloseTunnel()

  def Phase3(self):
    self._disks.FreeLocalVolumes(self.job.volumes)

  def _AbortCutover(self):
    """Puts the guest back into service on the source node.

    """
    job = self.job
    job.mirror.Cancel()
    self._StopRemoteGuest()
    self._disks.CleanupRemoteDisks()
    self._CloseTunnel()
    try:
      self._hv.Resume(job.guest_id)
    except errors.HypervisorError as err:
      job.Log(base.LOG_ERR, "resuming VM on the source node failed: %s" % err)
    self._replication.RemoveBitmaps(job)
    self._RestoreLocalConfig()

  def _ResumeRemoteGuest(self):
    job = self.job
    if job.tunnel is not None and job.tunnel.version >= 1:
      try:
        job.tunnel.WriteCommand("%s %s" % (constants.TUNNEL_CMD_RESUME,
                                           job.guest_id),
                                timeout=_RESUME_TIMEOUT)
      except errors.TunnelError as err:
        job.Log(base.LOG_ERR, err)
      return

    self._RunRemote([constants.VM_TOOL, "resume", str(job.guest_id),
                     "--skiplock", "--nocheck"],
                    "failed to resume VM on node '%s'" % job.target)

  def _WaitForSpiceMigration(self):
    job = self.job
    job.Log(base.LOG_INFO, "Waiting for spice server migration")

    def _Check():
      try:
        info = self._hv.QuerySpice(job.guest_id)
      except errors.HypervisorError as err:
        job.Log(base.LOG_INFO, "query-spice failed: %s" % err)
        return True
      return bool(info.get("migrated"))

    utils.CountRetry(True, _Check, constants.SPICE_MIGRATE_TRIES,
                     wait_fn=lambda _:
                       self._sleep_fn(constants.SPICE_MIGRATE_INTERVAL))

  def Phase3Cleanup(self):
    job = self.job
    conf = job.config
    source_volids = [volid for volid in disks.GetGuestVolumes(conf)
                     if volid not in job.volumes]

    mirrored = job.mirror is not None and bool(job.mirror.jobs)
    if mirrored:
      try:
        job.mirror.Complete()
      except errors.OpExecError as err:
        self._AbortCutover()
        raise errors.OpExecError("Failed to complete storage migration: %s" %
                                 err)

    if job.volume_map:
      for drive in job.target_drives:
        conf.pop(drive)
      conf.UpdateVolumeIds(job.volume_map)
      for (drive, target) in job.target_drives.items():
        conf[drive] = target.drivestr
      self._store.Write(conf)

    if job.is_replicated:
      self._replication.TransferState(job)
    self._store.MoveToNode(conf, job.target)
    if job.is_replicated:
      self._replication.SwitchTarget(job)

    if job.running:
      if job.stop_nbd:
        job.Log(base.LOG_INFO, "stopping NBD storage migration server on"
                " target.")
        self._RunRemote([constants.VM_TOOL, "nbdstop", str(job.guest_id)],
                        "failed to stop NBD server on node '%s'" % job.target)

      self._ResumeRemoteGuest()

      if mirrored and "fstrim_cloned_disks=1" in conf.get("agent", ""):
        result = job.ssh.Run([constants.VM_TOOL, "guest", "cmd",
                              str(job.guest_id), "fstrim"])
        if result.failed:
          job.Log(base.LOG_INFO, "fstrim on cloned disks failed: %s" %
                  result.fail_reason)

    self._CloseTunnel()

    if job.running and conf.UsesSpice():
      self._WaitForSpiceMigration()

    self._replication.RemoveBitmaps(job)

    try:
      self._hv.StopGuest(job.guest_id)
    except errors.HypervisorError as err:
      job.Log(base.LOG_ERR, "stopping vm failed - %s" % err)

    # volumes must not stay active on more than one node
    try:
      self._storage.Deactivate(source_volids)
    except errors.StorageError as err:
      job.Log(base.LOG_ERR, err)

    if mirrored:
      self._disks.FreeLocalVolumes(job.online_local_volumes)

    self._RunRemote([constants.VM_TOOL, "unlock", str(job.guest_id)],
                    "failed to clear migrate lock")

  def FinalCleanup(self):
    self._CloseTunnel()


def MigrateGuest(job, cluster_cfg, **kwargs):
  """Runs the migration of a guest.

  @type job: L{base.MigrationJob}
  @raise errors.GenericError: if the migration was aborted or had problems

  """
  QemuMigration(job, cluster_cfg, **kwargs).Migrate()
