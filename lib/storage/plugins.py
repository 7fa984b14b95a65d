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


"""Storage backend variants.

Each class maps the naming conventions and capabilities of one storage
type. Operations that move data are done by the storage tool, see
L{vmmigrate.storage.StorageManager}.

"""

import os
import re

from vmmigrate import constants
from vmmigrate.storage import base


_DIR_NAME_RE = re.compile(r"^((base-)?[^/\s]+\.(raw|qcow2|vmdk|subvol))$")
_DIR_CLONE_RE = re.compile(r"^(\d+)/(\S+)/(\d+)/(\S+)$")
_DIR_VOLNAME_RE = re.compile(r"^(\d+)/(\S+)$")
_LVM_VOLNAME_RE = re.compile(r"^(vm-(\d+)-\S+)$")
_THIN_VOLNAME_RE = re.compile(r"^((base-(\d+)-\S+)/)?((base)?(vm)?-(\d+)-\S+)$")
_ZFS_VOLNAME_RE = re.compile(r"^(((base|basevol)-(\d+)-\S+)/)?"
                             r"((base|basevol|subvol|basedisk|vm)-(\d+)-\S+)$")


def _ParseDirName(name):
  """Parses an image file name.

  @rtype: tuple
  @return: (name, format, is_base)

  """
  match = _DIR_NAME_RE.match(name)
  if not match:
    base.ThrowError("unable to parse volume filename '%s'", name)
  return (match.group(1), match.group(3), bool(match.group(2)))


class DirStorage(base.StorageBackend):
  """Image files inside a local directory.

  """
  STORAGE_TYPE = constants.ST_DIR
  FEATURES = {
    constants.STF_SNAPSHOT: {
      "current": frozenset(["qcow2"]),
      "snap": frozenset(["qcow2"]),
      },
    constants.STF_CLONE: {
      "base": frozenset(["qcow2", "raw", "vmdk"]),
      },
    constants.STF_COPY: {
      "base": frozenset(["qcow2", "raw", "vmdk"]),
      "current": frozenset(["qcow2", "raw", "vmdk"]),
      "snap": frozenset(["qcow2"]),
      },
    }

  def ParseVolname(self, volname):
    match = _DIR_CLONE_RE.match(volname)
    if match:
      (base_owner, basename, owner, name) = match.groups()
      _ParseDirName(basename)
      (_, fmt, is_base) = _ParseDirName(name)
      return base.VolumeName(vtype="images", name=name, owner=int(owner),
                             basename=basename, base_owner=int(base_owner),
                             is_base=is_base, format=fmt)

    match = _DIR_VOLNAME_RE.match(volname)
    if match:
      (owner, name) = match.groups()
      (_, fmt, is_base) = _ParseDirName(name)
      return base.VolumeName(vtype="images", name=name, owner=int(owner),
                             is_base=is_base, format=fmt)

    base.ThrowError("unable to parse directory volume name '%s'", volname)

  def GetPath(self, volname):
    vol = self.ParseVolname(volname)
    return os.path.join(self.scfg["path"], "images", str(vol.owner), vol.name)

  def CanMigrateSnapshots(self, volname):
    return self.ParseVolname(volname).format == "qcow2"

  def GetExportFormats(self, volname, with_snapshots):
    fmt = self.ParseVolname(volname).format
    if with_snapshots:
      if fmt in constants.IMAGE_FORMATS_WITH_SNAPSHOTS:
        return ["%s+size" % fmt]
      return []
    if fmt == "subvol":
      return ["tar+size"]
    return ["raw+size"]


class NfsStorage(DirStorage):
  """Image files on an NFS export mounted on all nodes.

  """
  STORAGE_TYPE = constants.ST_NFS
  ALWAYS_SHARED = True

  def CheckConnection(self):
    return os.path.ismount(self.scfg.get("path", ""))


class LvmStorage(base.StorageBackend):
  """Logical volumes in a volume group.

  """
  STORAGE_TYPE = constants.ST_LVM
  FEATURES = {
    constants.STF_COPY: {
      "base": None,
      "current": None,
      },
    }

  def ParseVolname(self, volname):
    match = _LVM_VOLNAME_RE.match(volname)
    if not match:
      base.ThrowError("unable to parse lvm volume name '%s'", volname)
    return base.VolumeName(vtype="images", name=match.group(1),
                           owner=int(match.group(2)), is_base=False,
                           format="raw")

  def GetPath(self, volname):
    vol = self.ParseVolname(volname)
    return "/dev/%s/%s" % (self.scfg["vgname"], vol.name)

  def Deactivate(self, volname, run_fn):
    path = self.GetPath(volname)
    if not os.path.exists(path):
      return
    result = run_fn(["/sbin/lvchange", "-aln", path])
    if result.failed:
      base.ThrowError("can't deactivate LV '%s': %s", path, result.output)


class LvmThinStorage(base.StorageBackend):
  """Thin logical volumes in a thin pool.

  """
  STORAGE_TYPE = constants.ST_LVMTHIN
  FEATURES = {
    constants.STF_SNAPSHOT: {
      "current": None,
      },
    constants.STF_CLONE: {
      "base": None,
      "snap": None,
      },
    constants.STF_COPY: {
      "base": None,
      "current": None,
      "snap": None,
      },
    }

  def ParseVolname(self, volname):
    match = _THIN_VOLNAME_RE.match(volname)
    if not match:
      base.ThrowError("unable to parse lvm volume name '%s'", volname)
    base_owner = match.group(3)
    return base.VolumeName(vtype="images", name=match.group(4),
                           owner=int(match.group(7)),
                           basename=match.group(2),
                           base_owner=int(base_owner) if base_owner else None,
                           is_base=bool(match.group(5)), format="raw")

  def GetPath(self, volname):
    vol = self.ParseVolname(volname)
    return "/dev/%s/%s" % (self.scfg["vgname"], vol.name)


class ZfsPoolStorage(base.StorageBackend):
  """ZFS volumes in a local pool.

  """
  STORAGE_TYPE = constants.ST_ZFSPOOL
  NATIVE_SNAPSHOT_MIGRATION = True
  FEATURES = {
    constants.STF_SNAPSHOT: {
      "current": None,
      "snap": None,
      },
    constants.STF_CLONE: {
      "base": None,
      },
    constants.STF_COPY: {
      "base": None,
      "current": None,
      },
    constants.STF_REPLICATE: {
      "base": None,
      "current": None,
      },
    }

  def ParseVolname(self, volname):
    match = _ZFS_VOLNAME_RE.match(volname)
    if not match:
      base.ThrowError("unable to parse zfs volume name '%s'", volname)
    base_owner = match.group(4)
    fmt = "subvol" if match.group(6) in ("subvol", "basevol") else "raw"
    return base.VolumeName(vtype="images", name=match.group(5),
                           owner=int(match.group(7)),
                           basename=match.group(2),
                           base_owner=int(base_owner) if base_owner else None,
                           is_base=match.group(6) in ("base", "basevol",
                                                      "basedisk"),
                           format=fmt)

  def GetPath(self, volname):
    vol = self.ParseVolname(volname)
    return "/dev/zvol/%s/%s" % (self.scfg["pool"], vol.name)

  def GetExportFormats(self, volname, with_snapshots):
    return ["zfs"]


class RbdStorage(base.StorageBackend):
  """RADOS block devices in a Ceph pool.

  """
  STORAGE_TYPE = constants.ST_RBD
  ALWAYS_SHARED = True
  FEATURES = {
    constants.STF_SNAPSHOT: {
      "current": None,
      "snap": None,
      },
    constants.STF_CLONE: {
      "base": None,
      "snap": None,
      },
    constants.STF_COPY: {
      "base": None,
      "current": None,
      "snap": None,
      },
    }

  def ParseVolname(self, volname):
    match = _THIN_VOLNAME_RE.match(volname)
    if not match:
      base.ThrowError("unable to parse rbd volume name '%s'", volname)
    base_owner = match.group(3)
    return base.VolumeName(vtype="images", name=match.group(4),
                           owner=int(match.group(7)),
                           basename=match.group(2),
                           base_owner=int(base_owner) if base_owner else None,
                           is_base=bool(match.group(5)), format="raw")

  def GetPath(self, volname):
    vol = self.ParseVolname(volname)
    return "rbd:%s/%s" % (self.scfg.get("pool", "rbd"), vol.name)
