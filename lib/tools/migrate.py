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


"""Script migrating a guest to another node.

"""

import logging
import optparse
import os
import socket
import sys

from vmmigrate import config
from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import pathutils
from vmmigrate import utils
from vmmigrate.migration import base
from vmmigrate.migration import qemu


def GetLocalNode():
  """Returns the short name of this node.

  """
  return socket.gethostname().split(".")[0]


def ParseOptions(args=None):
  """Parses the options passed to the program.

  @return: Options and arguments

  """
  parser = optparse.OptionParser(usage="%prog [options] <guest-id> <target>",
                                 prog=os.path.basename(sys.argv[0]))
  parser.add_option("-d", "--debug", default=0, action="count",
                    help="Increase debugging level")
  parser.add_option("-v", "--verbose", default=False, action="store_true",
                    help="Be verbose")
  parser.add_option("--online", dest="online", default=False,
                    action="store_true",
                    help="Migrate a running guest without stopping it")
  parser.add_option("--force", dest="force", default=False,
                    action="store_true",
                    help="Migrate despite local devices or a missing"
                    " replication job")
  parser.add_option("--with-local-disks", dest="with_local_disks",
                    default=False, action="store_true",
                    help="Mirror the local disks of a running guest")
  parser.add_option("--migration-type", dest="migration_type", default=None,
                    choices=sorted(constants.MIGRATION_TYPES),
                    help="Transfer memory through the encrypted tunnel"
                    " (secure) or over plain TCP (insecure)")
  parser.add_option("--migration-network", dest="migration_network",
                    default=None, metavar="CIDR",
                    help="Network used for the migration traffic")
  parser.add_option("--targetstorage", dest="targetstorage", default=None,
                    metavar="MAP",
                    help="Target storage mapping, as src:dst[,...] with an"
                    " optional single default storage")
  parser.add_option("--targetbridge", dest="targetbridge", default=None,
                    metavar="MAP",
                    help="Target bridge mapping for the network interfaces,"
                    " as src:dst[,...] with an optional single default"
                    " bridge")
  parser.add_option("--bwlimit", dest="bwlimit", default=None, type="int",
                    metavar="KIB",
                    help="Override the bandwidth limit, in KiB/s")
  parser.add_option("--source", dest="source", default=None,
                    help="Name of this node (defaults to the host name)")

  (opts, args) = parser.parse_args(args)

  return VerifyOptions(parser, opts, args)


def VerifyOptions(parser, opts, args):
  """Verifies options and arguments for correctness.

  """
  if len(args) != 2:
    parser.error("Expected a guest id and a target node")

  try:
    guest_id = int(args[0])
  except ValueError:
    parser.error("Invalid guest id '%s'" % args[0])

  if opts.bwlimit is not None and opts.bwlimit < 0:
    parser.error("Bandwidth limit must not be negative")

  return (opts, guest_id, args[1])


def Main(args=None):
  """Main routine.

  """
  (opts, guest_id, target) = ParseOptions(args)

  utils.SetupToolLogging(opts.debug, opts.verbose)

  source = opts.source or GetLocalNode()
  job = None
  try:
    if target == source:
      raise errors.OpPrereqError("Target node '%s' is the local node" %
                                 target, errors.ECODE_INVAL)

    cluster_cfg = config.ClusterConfig.Load(pathutils.CLUSTER_CONF_FILE)
    if target not in cluster_cfg.GetNodeNames():
      raise errors.OpPrereqError("Unknown target node '%s'" % target,
                                 errors.ECODE_NOENT)

    job = base.MigrationJob(guest_id, source, target, online=opts.online,
                            force=opts.force,
                            migration_type=opts.migration_type,
                            migration_network=opts.migration_network,
                            storage_map=config.ParseIdMap(opts.targetstorage),
                            bridge_map=config.ParseIdMap(opts.targetbridge),
                            with_local_disks=opts.with_local_disks,
                            bwlimit=opts.bwlimit)
    qemu.MigrateGuest(job, cluster_cfg)
  except errors.GenericError as err:
    logging.debug("Migration failed", exc_info=True)
    if job is None:
      logging.error(errors.FormatError(err))
    return constants.EXIT_FAILURE

  return constants.EXIT_SUCCESS
