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


"""Module holding different constants."""

from vmmigrate import pathutils

PROJECT_NAME = "vmmigrate"
RELEASE_VERSION = "1.0.0"

SSH = "ssh"
SSH_LOGIN_USER = "root"

#: Tool managing guests on a node (start, stop, resume, unlock, ...)
VM_TOOL = "qm"
#: Tool managing volumes on a node (path, alloc, free, export, import)
STORAGE_TOOL = "pvesm"
#: Tool running one replication pass
REPLICATION_TOOL = "pvesr"
#: Destination-side control channel command
MTUNNEL_TOOL = "vmmigrate-mtunnel"
#: Rate limiter for storage copy streams
CSTREAM = "cstream"

SYSLOG_USAGE = "no"
SYSLOG_NO = "no"
SYSLOG_YES = "yes"
SYSLOG_ONLY = "only"
SYSLOG_SOCKET = "/dev/log"

CHILD_LINGER_TIMEOUT = 5.0

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

ERRORS_ECODE_NORES = "insufficient_resources"
ERRORS_ECODE_INVAL = "wrong_input"
ERRORS_ECODE_STATE = "wrong_state"
ERRORS_ECODE_NOENT = "unknown_entity"
ERRORS_ECODE_EXISTS = "already_exists"
ERRORS_ECODE_FAULT = "internal_error"
ERRORS_ECODE_ENVIRON = "environment_error"
ERRORS_ECODE_ALL = frozenset([
  ERRORS_ECODE_NORES,
  ERRORS_ECODE_INVAL,
  ERRORS_ECODE_STATE,
  ERRORS_ECODE_NOENT,
  ERRORS_ECODE_EXISTS,
  ERRORS_ECODE_FAULT,
  ERRORS_ECODE_ENVIRON,
  ])

# Transfer modes
MIGRATION_TYPE_SECURE = "secure"
MIGRATION_TYPE_INSECURE = "insecure"
MIGRATION_TYPES = frozenset([
  MIGRATION_TYPE_SECURE,
  MIGRATION_TYPE_INSECURE,
  ])

# Control channel protocol
TUNNEL_READY_TOKEN = "tunnel online"
TUNNEL_NO_QUORUM_TOKEN = "no quorum"
TUNNEL_VERSION = 1
TUNNEL_REPLY_OK = "OK"
TUNNEL_CMD_QUIT = "quit"
TUNNEL_CMD_RESUME = "resume"

#: Timeout for the readiness token after spawning the tunnel
TUNNEL_HELLO_TIMEOUT = 60
#: Timeout for the version line following the readiness token
TUNNEL_VERSION_TIMEOUT = 10
#: Timeout for writing a command line
TUNNEL_WRITE_TIMEOUT = 60
#: Timeout for the reply to a command (version >= 1 peers)
TUNNEL_REPLY_TIMEOUT = 10
#: Timeout used for the best-effort "quit" on close
TUNNEL_QUIT_TIMEOUT = 30
#: Time given to the transport process to exit on its own after close
TUNNEL_EXIT_TIMEOUT = 30
#: Time given to the transport process after SIGTERM
TUNNEL_TERM_TIMEOUT = 10
#: Forwarded unix sockets are polled this many times ...
TUNNEL_SOCKET_TRIES = 100
#: ... with this interval (seconds) in between
TUNNEL_SOCKET_INTERVAL = 0.05

#: Local port range used for forwarding the memory transfer port
MIGRATE_PORT_RANGE = (60000, 60050)

# Volume classifications
VOLUME_REF_CONFIG = "config"
VOLUME_REF_SNAPSHOT = "snapshot"
VOLUME_REF_STORAGE = "storage"
VOLUME_REF_GENERATED = "generated"
VOLUME_REF_REPLICATED = "replicated"
VOLUME_REFS = frozenset([
  VOLUME_REF_CONFIG,
  VOLUME_REF_SNAPSHOT,
  VOLUME_REF_STORAGE,
  VOLUME_REF_GENERATED,
  VOLUME_REF_REPLICATED,
  ])

# Storage types
ST_DIR = "dir"
ST_LVM = "lvm"
ST_LVMTHIN = "lvmthin"
ST_ZFSPOOL = "zfspool"
ST_RBD = "rbd"
ST_NFS = "nfs"
ST_ALL = frozenset([ST_DIR, ST_LVM, ST_LVMTHIN, ST_ZFSPOOL, ST_RBD, ST_NFS])
#: Storage types whose volumes can be copied to another node
ST_MIGRATABLE = frozenset([ST_DIR, ST_ZFSPOOL, ST_LVMTHIN, ST_LVM])

# Storage features (see L{storage.base.StorageBackend.SupportsFeature})
STF_SNAPSHOT = "snapshot"
STF_CLONE = "clone"
STF_COPY = "copy"
STF_REPLICATE = "replicate"

# Image formats carrying internal snapshots
IMAGE_FORMATS_WITH_SNAPSHOTS = frozenset(["qcow2", "vmdk"])

# Bandwidth limit operation classes
BWLIMIT_DEFAULT = "default"
BWLIMIT_MIGRATION = "migration"
BWLIMIT_CLONE = "clone"
BWLIMIT_MOVE = "move"
BWLIMIT_RESTORE = "restore"

# Hypervisor memory transfer statuses
HV_MIGRATION_SETUP = "setup"
HV_MIGRATION_ACTIVE = "active"
HV_MIGRATION_COMPLETED = "completed"
HV_MIGRATION_FAILED = "failed"
HV_MIGRATION_CANCELLED = "cancelled"
HV_MIGRATION_VALID_STATUSES = frozenset([
  HV_MIGRATION_SETUP,
  HV_MIGRATION_ACTIVE,
  HV_MIGRATION_COMPLETED,
  HV_MIGRATION_FAILED,
  HV_MIGRATION_CANCELLED,
  ])
HV_MIGRATION_FAILED_STATUSES = frozenset([
  HV_MIGRATION_FAILED,
  HV_MIGRATION_CANCELLED,
  ])
HV_MIGRATION_TERMINAL_STATUSES = frozenset([
  HV_MIGRATION_COMPLETED,
  HV_MIGRATION_FAILED,
  HV_MIGRATION_CANCELLED,
  ])

#: Poll interval while the memory transfer is far from converging
MIGRATION_POLL_INTERVAL = 1.0
#: Poll interval once the remaining bytes drop below the average rate
MIGRATION_FAST_POLL_INTERVAL = 0.1
#: Extra delay after a failed status query
MIGRATION_QUERY_RETRY_DELAY = 1.0
#: Consecutive failed status queries that are tolerated
MIGRATION_MAX_QUERY_FAILURES = 5
#: Stalled samples after which the downtime limit is doubled
MIGRATION_MAX_STALLED_SAMPLES = 5
#: Downtime limit (seconds) used when the guest does not override it
MIGRATION_DEFAULT_DOWNTIME = 0.1
#: Migration speed (MiB/s) used when no limit is configured at all
MIGRATION_DEFAULT_SPEED = 8192
#: Guest memory (MiB) assumed when the guest config does not specify it
DEFAULT_GUEST_MEMORY = 512
#: Share of the guest memory used for the compression cache
MIGRATION_CACHE_RATIO = 10

# Migration capabilities enabled before the transfer is triggered
MIGRATION_CAPABILITIES = [
  "xbzrle",
  "auto-converge",
  "zero-blocks",
  "dirty-bitmaps",
  ]

# Block-mirror job states
MIRROR_RUNNING = "running"
MIRROR_READY = "ready"
MIRROR_CANCELLED = "cancelled"
MIRROR_COMPLETED = "completed"
MIRROR_FAILED = "failed"
MIRROR_STATES = frozenset([
  MIRROR_RUNNING,
  MIRROR_READY,
  MIRROR_CANCELLED,
  MIRROR_COMPLETED,
  MIRROR_FAILED,
  ])
MIRROR_POLL_INTERVAL = 1.0
#: Upper bound for a block-mirror job to reach the ready state
MIRROR_READY_TIMEOUT = 24 * 3600
#: Upper bound for a cancelled/completed job to disappear
MIRROR_FINISH_TIMEOUT = 300

#: Prefix of the drive node names inside the hypervisor
DRIVE_NODE_PREFIX = "drive-"
#: Prefix of the dirty bitmaps used for replicated drives
REPLICATION_BITMAP_PREFIX = "repl_"
#: Protocol version announced to the destination for NBD exports
NBD_PROTOCOL_VERSION = 1

# Display proxy hand-over
SPICE_MIGRATE_TRIES = 50
SPICE_MIGRATE_INTERVAL = 0.2

#: Guest config keys holding drives
DRIVE_BUSES = ("ide", "sata", "scsi", "virtio", "efidisk", "tpmstate")
#: Drive options marking passthrough devices that cannot be migrated
LOCAL_RESOURCE_KEYS = ("hostpci", "usb", "parallel", "serial")

#: Guest config lock values
LOCK_MIGRATE = "migrate"

QMP_SOCKET_TIMEOUT = 5
#: Time a guest process is given to quit before it is killed
GUEST_STOP_TIMEOUT = 30
QMP_MESSAGE_END_TOKEN = b"\r\n"

DEFAULT_LOG_FILE = pathutils.MIGRATE_LOG_FILE
