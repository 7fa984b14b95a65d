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


"""Module containing constants and functions for filesystem paths.

All paths honour the C{VMMIGRATE_ROOTDIR} environment variable, which is
prepended to every absolute path (used by the test-suite and by
development setups running several fake nodes on one host).

"""

import os
import os.path

_ROOTDIR_ENVNAME = "VMMIGRATE_ROOTDIR"


def AddNodePrefix(path, _rootdir=None):
  """Adds the configured root directory to an absolute path.

  @type path: string
  @param path: absolute path
  @rtype: string

  """
  assert os.path.isabs(path), "Path must be absolute: %s" % path

  if _rootdir is None:
    _rootdir = os.environ.get(_ROOTDIR_ENVNAME, "")

  if not _rootdir:
    return path

  return os.path.normpath(_rootdir + path)


SYSCONFDIR = AddNodePrefix("/etc")
LOCALSTATEDIR = AddNodePrefix("/var")
RUNSTATEDIR = AddNodePrefix("/run")

# Top-level paths
CONF_DIR = SYSCONFDIR + "/vmmigrate"
LOG_DIR = LOCALSTATEDIR + "/log/vmmigrate"
RUN_DIR = RUNSTATEDIR + "/qemu-server"

#: Per-guest lock files serializing config changes on this node
LOCK_DIR = RUNSTATEDIR + "/lock/qemu-server"

#: Cluster-wide settings (migration defaults, bandwidth limits, storages)
CLUSTER_CONF_FILE = CONF_DIR + "/cluster.json"

#: Root of the shared cluster filesystem holding the per-node guest configs
CLUSTER_FS_DIR = CONF_DIR + "/cluster"

#: Marker file written by the cluster stack while the node has quorum
QUORUM_FILE = CLUSTER_FS_DIR + "/.quorate"

#: Host keys of all cluster nodes, indexed by node name
SSH_KNOWN_HOSTS_FILE = CONF_DIR + "/ssh_known_hosts"

MIGRATE_LOG_FILE = LOG_DIR + "/migrate.log"
MTUNNEL_LOG_FILE = LOG_DIR + "/mtunnel.log"

#: Last replication state of the local guests, indexed by guest and job
REPLICATION_STATE_FILE = LOCALSTATEDIR + "/lib/vmmigrate/replication-state.json"


def GetGuestConfigDir(node):
  """Returns the directory holding the guest configurations of a node.

  """
  return "%s/nodes/%s/qemu-server" % (CLUSTER_FS_DIR, node)


def GetGuestConfigFile(node, guest_id):
  """Returns the configuration file of a guest owned by a node.

  """
  return "%s/%s.conf" % (GetGuestConfigDir(node), guest_id)


def GetGuestPidFile(guest_id):
  """Returns the pidfile of a running guest process.

  """
  return "%s/%s.pid" % (RUN_DIR, guest_id)


def GetGuestQmpSocket(guest_id):
  """Returns the QMP monitor socket of a running guest.

  """
  return "%s/%s.qmp" % (RUN_DIR, guest_id)


def GetGuestLockFile(guest_id):
  """Returns the lock file serializing changes to a guest configuration.

  """
  return "%s/lock-%s.conf" % (LOCK_DIR, guest_id)
