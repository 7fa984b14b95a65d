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


"""Storage backend abstraction - base class and utility functions"""

import logging

from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import objects


class VolumeName(objects.ConfigObject):
  """A parsed volume name.

  @ivar vtype: content type, always C{images} for guest disks
  @ivar name: the volume name without any base prefix
  @ivar owner: id of the guest owning the volume
  @ivar basename: name of the base volume of a linked clone
  @ivar base_owner: owner of the base volume
  @ivar is_base: whether the volume is a base (template) volume
  @ivar format: image format

  """
  __slots__ = [
    "vtype",
    "name",
    "owner",
    "basename",
    "base_owner",
    "is_base",
    "format",
    ]


class StorageBackend(object):
  """Storage backend abstract class.

  A backend is bound to one storage definition of the cluster configuration.
  Its capabilities are described by L{FEATURES}, a dict mapping each feature
  to the volume kinds (C{current}, C{base} or C{snap}) supporting it, and for
  each kind either C{None} (any format) or the set of supporting formats.

  """
  STORAGE_TYPE = None
  #: Whether volumes are reachable from every node regardless of the config
  ALWAYS_SHARED = False
  FEATURES = {}
  #: Whether volumes carrying internal snapshots can be copied to another node
  NATIVE_SNAPSHOT_MIGRATION = False

  def __init__(self, storeid, scfg):
    self.storeid = storeid
    self.scfg = scfg

  def IsShared(self):
    return self.ALWAYS_SHARED or bool(self.scfg.get("shared"))

  def IsEnabled(self):
    return not self.scfg.get("disable")

  def IsAvailableOn(self, node):
    """Checks whether the storage is configured for a node.

    A storage without node list is available on all nodes.

    """
    nodes = self.scfg.get("nodes")
    return not nodes or node in nodes

  def HasContent(self, content):
    return content in self.scfg.get("content", ["images"])

  def CheckConnection(self):
    """Checks whether a shared storage is reachable from this node.

    """
    return True

  def GetBandwidthLimits(self):
    """Returns this storage's bandwidth limits in KiB/s per class, or None.

    """
    return self.scfg.get("bwlimit")

  def ParseVolname(self, volname):
    """Parses a volume name.

    @rtype: L{VolumeName}
    @raise errors.StorageError: if the name is not valid for this backend

    """
    raise NotImplementedError

  def GetPath(self, volname):
    """Returns the local path (or URI) of a volume.

    """
    raise NotImplementedError

  def SupportsFeature(self, feature, volname, snapname=None):
    """Checks whether a volume supports a feature.

    @type feature: string
    @param feature: one of the C{constants.STF_*} features
    @type snapname: string or None
    @param snapname: check the feature for a snapshot of the volume

    """
    vol = self.ParseVolname(volname)
    if snapname:
      key = "snap"
    elif vol.is_base:
      key = "base"
    else:
      key = "current"

    kinds = self.FEATURES.get(CheckFeature(feature), {})
    if key not in kinds:
      return False
    formats = kinds[key]
    return formats is None or vol.format in formats

  def CanMigrateSnapshots(self, volname):
    """Whether a volume with internal snapshots can be copied to another node.

    """
    return self.NATIVE_SNAPSHOT_MIGRATION

  def GetExportFormats(self, volname, with_snapshots):
    """Returns the stream formats a volume can be exported in.

    """
    vol = self.ParseVolname(volname)
    if with_snapshots:
      return []
    if vol.format != "raw":
      return []
    return ["raw+size"]

  def GetImportFormats(self, volname, with_snapshots):
    """Returns the stream formats a volume can be imported from.

    """
    return self.GetExportFormats(volname, with_snapshots)

  def Deactivate(self, volname, run_fn):
    """Deactivates a volume on this node.

    Nothing to do by default.

    """


def ThrowError(msg, *args):
  """Log an error and then raise an exception.

  @type msg: string
  @param msg: the text of the exception
  @raise errors.StorageError

  """
  if args:
    msg = msg % args
  logging.error(msg)
  raise errors.StorageError(msg)


def CheckFeature(feature):
  """Checks a feature name.

  @raise errors.ProgrammerError: for unknown features

  """
  if feature not in (constants.STF_SNAPSHOT, constants.STF_CLONE,
                     constants.STF_COPY, constants.STF_REPLICATE):
    raise errors.ProgrammerError("Invalid storage feature '%s'" % feature)
  return feature
