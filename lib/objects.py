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


"""Transportable objects for the migration code.

This module provides small classes which hold the data the migration
controller works on: guest configurations and their drives, the per-volume
migration records, block-mirror jobs and transfer status snapshots.

"""

# pylint: disable=E0203,W0201,R0902

import copy
import re

from vmmigrate import errors
from vmmigrate import constants
from vmmigrate import outils


_DRIVE_KEY_RE = re.compile(r"^(%s)(\d+)$" % "|".join(constants.DRIVE_BUSES))
_UNUSED_KEY_RE = re.compile(r"^unused(\d+)$")
_NET_KEY_RE = re.compile(r"^net(\d+)$")
_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)([KMGT])?$")

_SIZE_UNITS = [
  ("T", 1024 ** 4),
  ("G", 1024 ** 3),
  ("M", 1024 ** 2),
  ("K", 1024),
  ]


class ConfigObject(outils.ValidatedSlots):
  """A generic config object.

  It has the following properties:

    - unset attributes which are defined in slots are always returned
      as None instead of raising an error
    - conversion from and to dictionaries holding only standard types

  Classes derived from this must always declare __slots__.

  """
  __slots__ = []

  def __getattr__(self, name):
    if name not in self.GetAllSlots():
      raise AttributeError("Invalid object attribute %s.%s" %
                           (type(self).__name__, name))
    return None

  def Validate(self):
    """Validates the slots.

    """

  def ToDict(self):
    """Convert to a dict holding only standard python types.

    """
    result = {}
    for name in self.GetAllSlots():
      value = getattr(self, name, None)
      if value is not None:
        result[name] = value
    return result

  @classmethod
  def FromDict(cls, val):
    """Create an object from a dictionary.

    """
    if not isinstance(val, dict):
      raise errors.ConfigurationError("Invalid object passed to FromDict:"
                                      " expected dict, got %s" % type(val))
    val_str = dict([(str(k), v) for k, v in val.items()])
    return cls(**val_str)

  def Copy(self):
    """Makes a deep copy of the current object and its children.

    """
    return self.__class__.FromDict(copy.deepcopy(self.ToDict()))

  def __repr__(self):
    """Implement __repr__ for ConfigObjects."""
    return repr(self.ToDict())

  def __eq__(self, other):
    """Implement __eq__ for ConfigObjects."""
    return isinstance(other, self.__class__) and self.ToDict() == other.ToDict()


def ParseSize(value):
  """Parses a drive size string like C{32G} into bytes.

  A value without unit is taken as bytes.

  @type value: string
  @rtype: int
  @raise errors.ParseError: for malformed values

  """
  match = _SIZE_RE.match(str(value).strip())
  if not match:
    raise errors.ParseError("Invalid size '%s'" % value)

  (number, unit) = match.groups()
  factor = 1
  for (name, unit_factor) in _SIZE_UNITS:
    if name == unit:
      factor = unit_factor
      break

  return int(float(number) * factor)


def FormatSize(size):
  """Formats a size in bytes with the largest unit dividing it.

  @type size: int
  @rtype: string

  """
  for (name, factor) in _SIZE_UNITS:
    if size >= factor and size % factor == 0:
      return "%d%s" % (size // factor, name)
  return str(size)


def IsDriveKey(key):
  """Checks whether a guest config key names a drive.

  """
  return bool(_DRIVE_KEY_RE.match(key))


def IsUnusedKey(key):
  """Checks whether a guest config key names an unused volume.

  """
  return bool(_UNUSED_KEY_RE.match(key))


class Drive(ConfigObject):
  """A drive as found in a guest configuration.

  @ivar key: the config key, e.g. C{scsi0}
  @ivar file: volume id, absolute path or C{none}
  @ivar options: list of (name, value) pairs, in config order

  """
  __slots__ = [
    "key",
    "file",
    "options",
    ]

  def GetOption(self, name, default=None):
    for (opt, value) in self.options or []:
      if opt == name:
        return value
    return default

  def SetOption(self, name, value):
    """Sets an option, replacing an existing one in place.

    """
    if self.options is None:
      self.options = []
    for (idx, (opt, _)) in enumerate(self.options):
      if opt == name:
        self.options[idx] = (name, value)
        return
    self.options.append((name, value))

  def IsCdrom(self):
    return self.GetOption("media") == "cdrom"

  def IsShared(self):
    """Whether the drive is explicitly marked as reachable from all nodes.

    """
    return self.GetOption("shared") == "1"

  def IsReplicated(self):
    return self.GetOption("replicate", "1") != "0"

  def GetSize(self):
    size = self.GetOption("size")
    if size is None:
      return None
    return ParseSize(size)

  def ToString(self):
    """Prints the drive back in guest config format.

    """
    parts = [self.file]
    for (opt, value) in self.options or []:
      parts.append("%s=%s" % (opt, value))
    return ",".join(parts)


def ParseDrive(key, value):
  """Parses a drive definition.

  The value is a comma separated list whose first element is the volume
  (either bare or as C{file=...}), followed by C{name=value} options.

  @type key: string
  @param key: the config key the drive was found under
  @type value: string
  @param value: the drive definition
  @rtype: L{Drive}
  @raise errors.ParseError: if the definition is malformed

  """
  parts = value.split(",")
  volume = None
  options = []
  for (idx, part) in enumerate(parts):
    if "=" not in part:
      if idx != 0:
        raise errors.ParseError("Invalid drive option '%s' in %s" %
                                (part, key))
      volume = part
      continue
    (name, optval) = part.split("=", 1)
    if name in ("file", "volume") and volume is None:
      volume = optval
    else:
      options.append((name, optval))

  if not volume:
    raise errors.ParseError("Drive %s has no volume" % key)

  return Drive(key=key, file=volume, options=options)


class GuestConfig(object):
  """Configuration of one guest.

  This wraps the configuration dictionary, which holds arbitrary keys, and
  provides accessors for the parts the migration code needs.

  """
  def __init__(self, guest_id, data=None, node=None):
    self.guest_id = guest_id
    self.node = node
    if data is None:
      data = {}
    self.data = data

  def __contains__(self, key):
    return key in self.data

  def __getitem__(self, key):
    return self.data[key]

  def __setitem__(self, key, value):
    self.data[key] = value

  def get(self, key, default=None):
    return self.data.get(key, default)

  def pop(self, key, default=None):
    return self.data.pop(key, default)

  @property
  def lock(self):
    return self.data.get("lock")

  @property
  def snapshots(self):
    return self.data.get("snapshots", {})

  def GetMemory(self):
    return int(self.data.get("memory", constants.DEFAULT_GUEST_MEMORY))

  def UsesSpice(self):
    """Whether the guest uses a spice display (qxl graphics).

    """
    return self.data.get("vga", "").startswith("qxl")

  def IterDrives(self, include_unused=False, section=None):
    """Iterates over the drives of the config or of one snapshot.

    @type include_unused: boolean
    @param include_unused: whether to also return C{unusedN} entries
    @type section: dict or None
    @param section: snapshot section to iterate; the main config if None
    @return: iterator over L{Drive} objects, sorted by key

    """
    if section is None:
      section = self.data
    for key in sorted(section):
      if IsDriveKey(key) or (include_unused and IsUnusedKey(key)):
        yield ParseDrive(key, section[key])

  def GetDrive(self, key):
    return ParseDrive(key, self.data[key])

  def SetDrive(self, drive):
    self.data[drive.key] = drive.ToString()

  def GetLocalResources(self):
    """Returns the keys of passthrough devices bound to this node.

    USB devices redirected through spice and serial/parallel ports backed by
    a socket can move along with the guest.

    """
    result = []
    for key in sorted(self.data):
      prefix = key.rstrip("0123456789")
      if prefix not in constants.LOCAL_RESOURCE_KEYS or prefix == key:
        continue
      value = str(self.data[key])
      if prefix == "usb" and "spice" in value:
        continue
      if prefix in ("serial", "parallel") and value == "socket":
        continue
      result.append(key)
    return result

  def MapBridges(self, map_fn):
    """Replaces the bridges the network interfaces are attached to.

    @type map_fn: callable
    @param map_fn: returns the new bridge for a bridge name
    @rtype: dict
    @return: the previous definitions of the changed interfaces, by key

    """
    previous = {}
    for key in sorted(self.data):
      if not _NET_KEY_RE.match(key):
        continue
      parts = self.data[key].split(",")
      for (idx, part) in enumerate(parts):
        if not part.startswith("bridge="):
          continue
        bridge = part[len("bridge="):]
        new_bridge = map_fn(bridge)
        if new_bridge != bridge:
          parts[idx] = "bridge=%s" % new_bridge
      value = ",".join(parts)
      if value != self.data[key]:
        previous[key] = self.data[key]
        self.data[key] = value
    return previous

  def UpdateVolumeIds(self, volume_map):
    """Replaces volume ids in the config and all snapshots.

    @type volume_map: dict
    @param volume_map: old volume id to new volume id

    """
    sections = [self.data] + list(self.snapshots.values())
    for section in sections:
      for drive in list(self.IterDrives(include_unused=True, section=section)):
        if drive.file in volume_map:
          drive.file = volume_map[drive.file]
          section[drive.key] = drive.ToString()
      vmstate = section.get("vmstate")
      if vmstate in volume_map:
        section["vmstate"] = volume_map[vmstate]

  def ToDict(self):
    return copy.deepcopy(self.data)

  @classmethod
  def FromDict(cls, guest_id, val, node=None):
    if not isinstance(val, dict):
      raise errors.ConfigurationError("Invalid guest config for %s: expected"
                                      " dict, got %s" % (guest_id, type(val)))
    return cls(guest_id, data=val, node=node)


class VolumeMigrationEntry(ConfigObject):
  """One volume that needs attention during the migration.

  @ivar volid: source volume id
  @ivar ref: classification, one of L{constants.VOLUME_REFS}
  @ivar snapshots: whether the volume carries internal snapshots
  @ivar is_vmstate: whether the volume holds a saved memory state
  @ivar drivename: config key of the drive using it, if any
  @ivar target_storage: storage id on the destination
  @ivar target_volid: volume id on the destination, once copied
  @ivar size: size in bytes, once rescanned
  @ivar format: image format reported by the storage

  """
  __slots__ = [
    "volid",
    "ref",
    "snapshots",
    "is_vmstate",
    "drivename",
    "target_storage",
    "target_volid",
    "size",
    "format",
    ]

  def Validate(self):
    if self.ref not in constants.VOLUME_REFS:
      raise errors.ConfigurationError("Volume %s has invalid classification"
                                      " '%s'" % (self.volid, self.ref))


class TargetDrive(ConfigObject):
  """A drive exported by the destination for block-mirroring.

  @ivar drive: drive key, e.g. C{scsi0}
  @ivar drivestr: the drive definition the destination uses
  @ivar nbd_uri: network block device endpoint

  """
  __slots__ = [
    "drive",
    "drivestr",
    "nbd_uri",
    ]


class DriveMirrorJob(ConfigObject):
  """A block-mirror job copying one drive to the destination.

  """
  __slots__ = [
    "drive",
    "target_uri",
    "bitmap",
    "state",
    "offset",
    "length",
    ]

  @property
  def job_id(self):
    return constants.DRIVE_NODE_PREFIX + self.drive

  def Validate(self):
    if self.state not in constants.MIRROR_STATES:
      raise errors.ConfigurationError("Mirror job %s has invalid state '%s'" %
                                      (self.drive, self.state))


class ReplicationBitmap(ConfigObject):
  """A dirty bitmap tracking writes to a replicated drive.

  """
  __slots__ = [
    "drive",
    "name",
    ]

  @property
  def node(self):
    return constants.DRIVE_NODE_PREFIX + self.drive

  @classmethod
  def ForDrive(cls, drive):
    return cls(drive=drive, name=constants.REPLICATION_BITMAP_PREFIX + drive)


class MigrationStatus(ConfigObject):
  """Status of a memory transfer, as reported by the hypervisor.

  """
  __slots__ = [
    "status",
    "transferred_ram",
    "remaining_ram",
    "total_ram",
    "downtime",
    "total_time",
    "xbzrle_cache",
    ]

  @classmethod
  def FromQmp(cls, result):
    """Builds a status object from a C{query-migrate} reply.

    """
    ram = result.get("ram", {})
    return cls(status=result.get("status"),
               transferred_ram=ram.get("transferred"),
               remaining_ram=ram.get("remaining"),
               total_ram=ram.get("total"),
               downtime=result.get("downtime"),
               total_time=result.get("total-time"),
               xbzrle_cache=result.get("xbzrle-cache"))


class TransferParameters(ConfigObject):
  """Tunable parameters of a memory transfer.

  @ivar max_bandwidth: bytes per second
  @ivar downtime_limit: milliseconds
  @ivar cache_size: bytes

  """
  __slots__ = [
    "max_bandwidth",
    "downtime_limit",
    "cache_size",
    ]
