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


"""Unit tests for vmmigrate.storage"""

import pytest

from vmmigrate import config
from vmmigrate import constants
from vmmigrate import errors
from vmmigrate import storage

import testutils
from testutils import config_mock


STORAGES = {
  "local": {"type": constants.ST_DIR, "path": "/var/lib/vz",
            "bwlimit": {"migration": 50000}},
  "lvm": {"type": constants.ST_LVM, "vgname": "vg0",
          "bwlimit": {"default": 20000}},
  "thin": {"type": constants.ST_LVMTHIN, "vgname": "vg0"},
  "zfs": {"type": constants.ST_ZFSPOOL, "pool": "rpool", "nodes": ["node1"]},
  "ceph": {"type": constants.ST_RBD},
  "off": {"type": constants.ST_DIR, "path": "/mnt", "disable": 1},
  }


class TestParseVolumeId:

  def test_valid(self):
    assert storage.ParseVolumeId("local:100/vm-100-disk-0.qcow2") == \
      ("local", "100/vm-100-disk-0.qcow2")

  @pytest.mark.parametrize("volid", ["nocolon", ":empty", "1bad:x"])
  def test_invalid(self, volid):
    with pytest.raises(errors.StorageError):
      storage.ParseVolumeId(volid)

  def test_path_volume(self):
    assert storage.IsPathVolume("/dev/sdb")
    assert not storage.IsPathVolume("local:100/a.raw")


class TestBandwidthLimit:

  def test_unlimited(self):
    assert storage.ComputeBandwidthLimit("migration", [], None) is None

  def test_lowest_storage_limit_wins(self):
    limit = storage.ComputeBandwidthLimit(
      "migration", [{"migration": 500}, {"default": 300}],
      {"migration": 100})
    assert limit == 300

  def test_global_applies_without_storage_limit(self):
    limit = storage.ComputeBandwidthLimit(
      "migration", [{"migration": 500}, None], {"migration": 100})
    assert limit == 100

  def test_override_is_lowered(self):
    assert storage.ComputeBandwidthLimit("migration", [{"migration": 500}],
                                         None, override=1000) == 500
    assert storage.ComputeBandwidthLimit("migration", [{"migration": 500}],
                                         None, override=200) == 200

  def test_global_default(self):
    assert storage.ComputeBandwidthLimit("move", [], {"default": 42}) == 42


class TestStorageManager:

  @pytest.fixture
  def tool(self):
    return config_mock.FakeStorageTool({
      "local": [
        {"volid": "local:100/vm-100-disk-0.qcow2", "format": "qcow2",
         "size": 1024, "vmid": 100},
        {"volid": "local:101/vm-101-disk-0.raw", "format": "raw",
         "size": 2048, "vmid": 101},
        ],
      "thin": [
        {"volid": "thin:base-200-disk-0", "vmid": 200},
        {"volid": "thin:base-200-disk-0/vm-201-disk-0", "vmid": 201},
        ],
      })

  @pytest.fixture
  def mgr(self, tmp_path, tool):
    cfg = config_mock.ConfigMock(tmp_path, storages=STORAGES,
                                 bwlimit={"migration": 10000})
    return storage.StorageManager(cfg.cluster, "node1", _run_fn=tool)

  def test_parse_volnames(self, mgr):
    vol = mgr.ParseVolname("local:100/vm-100-disk-0.qcow2")
    assert (vol.owner, vol.format, vol.is_base) == (100, "qcow2", False)

    vol = mgr.ParseVolname(
      "local:100/base-100-disk-0.raw/101/vm-101-disk-0.qcow2")
    assert vol.owner == 101
    assert vol.basename == "base-100-disk-0.raw"

    vol = mgr.ParseVolname("zfs:subvol-105-disk-1")
    assert (vol.owner, vol.format) == (105, "subvol")

    with pytest.raises(errors.StorageError):
      mgr.ParseVolname("lvm:not-a-guest-volume")

  def test_unknown_storage(self, mgr):
    with pytest.raises(errors.ConfigurationError):
      mgr.GetBackend("nowhere")

  def test_shared(self, mgr):
    assert mgr.IsShared("ceph")
    assert not mgr.IsShared("local")

  def test_check_node(self, mgr):
    assert mgr.CheckNode("zfs", "node1").STORAGE_TYPE == constants.ST_ZFSPOOL
    with pytest.raises(errors.OpPrereqError):
      mgr.CheckNode("zfs", "node2")
    with pytest.raises(errors.OpPrereqError):
      mgr.CheckNode("off", "node1")

  def test_features(self, mgr):
    assert mgr.SupportsFeature("local:100/vm-100-disk-0.qcow2",
                               constants.STF_SNAPSHOT)
    assert not mgr.SupportsFeature("local:100/vm-100-disk-0.raw",
                                   constants.STF_SNAPSHOT)
    assert mgr.SupportsFeature("zfs:vm-100-disk-0", constants.STF_REPLICATE)
    assert not mgr.SupportsFeature("lvm:vm-100-disk-0",
                                   constants.STF_REPLICATE)
    with pytest.raises(errors.ProgrammerError):
      mgr.SupportsFeature("lvm:vm-100-disk-0", "teleport")

  def test_bandwidth_limit(self, mgr):
    assert mgr.GetBandwidthLimit(constants.BWLIMIT_MIGRATION,
                                 ["local", "lvm"]) == 20000
    assert mgr.GetBandwidthLimit(constants.BWLIMIT_MIGRATION,
                                 ["thin"]) == 10000
    assert mgr.GetBandwidthLimit(constants.BWLIMIT_MIGRATION, [],
                                 override=500) == 500

  def test_list_guest_volumes(self, mgr, tool):
    volumes = mgr.ListGuestVolumes("local", 100)
    assert [v["volid"] for v in volumes] == ["local:100/vm-100-disk-0.qcow2"]
    assert tool.commands[-1][-2:] == ["--vmid", "100"]

  def test_list_failure(self, mgr, tool):
    tool.fail.add("list")
    with pytest.raises(errors.StorageError):
      mgr.ListGuestVolumes("local", 100)

  def test_base_and_used(self, mgr):
    assert mgr.IsBaseAndUsed("thin:base-200-disk-0")
    assert not mgr.IsBaseAndUsed("thin:vm-300-disk-0")

  def test_resolve_path(self, mgr):
    assert (mgr.ResolvePath("local:100/vm-100-disk-0.qcow2") ==
            "/var/lib/vz/images/100/vm-100-disk-0.qcow2")
    assert mgr.ResolvePath("lvm:vm-100-disk-0") == "/dev/vg0/vm-100-disk-0"
    assert (mgr.ResolvePath("zfs:vm-100-disk-0") ==
            "/dev/zvol/rpool/vm-100-disk-0")
    assert mgr.ResolvePath("ceph:vm-100-disk-0") == "rbd:rbd/vm-100-disk-0"
    assert mgr.ResolvePath("/dev/sdb") == "/dev/sdb"

  def test_allocate(self, mgr):
    commands = []

    def _Run(cmd, **kwargs):
      commands.append(cmd)
      return testutils.MakeResult(cmd, "successfully created"
                                  " 'lvm:vm-100-disk-3'\n")

    mgr._run_fn = _Run
    assert mgr.Allocate("lvm", 100, "raw", None, 4096) == "lvm:vm-100-disk-3"
    assert commands == [[constants.STORAGE_TOOL, "alloc", "lvm", "100", "",
                         "4096K", "--format", "raw"]]

  def test_allocate_unexpected_output(self, mgr, tool):
    with pytest.raises(errors.StorageError):
      mgr.Allocate("local", 100, "qcow2", "vm-100-disk-5.qcow2", 1024)
    tool.fail.add("alloc")
    with pytest.raises(errors.StorageError):
      mgr.Allocate("local", 100, "qcow2", "vm-100-disk-5.qcow2", 1024)

  def test_copy_to(self, mgr, tool):
    target_ssh = testutils.FakeSsh()
    new_volid = mgr.CopyTo("local:100/vm-100-disk-0.qcow2", target_ssh,
                           "local", rate_limit=1024 * 1024,
                           allow_rename=True)
    assert new_volid == "local:100/vm-100-disk-0.qcow2"
    (pipeline, ) = tool.GetCopies()
    assert pipeline.startswith("pvesm export local:100/vm-100-disk-0.qcow2"
                               " raw+size - -with-snapshots 0 | cstream -t"
                               " 1048576 | ssh root@10.0.0.2 ")
    assert "-allow-rename 1" in pipeline

  def test_copy_to_renamed(self, mgr):
    def _Run(cmd, **kwargs):
      return testutils.MakeResult(cmd, "successfully imported"
                                  " 'local:100/vm-100-disk-1.qcow2'\n")

    mgr._run_fn = _Run
    assert mgr.CopyTo("local:100/vm-100-disk-0.qcow2", testutils.FakeSsh(),
                      "local") == "local:100/vm-100-disk-1.qcow2"

  def test_copy_without_common_format(self, mgr):
    with pytest.raises(errors.StorageError):
      mgr.CopyTo("local:100/vm-100-disk-0.qcow2", testutils.FakeSsh(),
                 "zfs", with_snapshots=True)

  def test_copy_failure(self, mgr, tool):
    tool.fail.add("copy")
    with pytest.raises(errors.StorageError):
      mgr.CopyTo("lvm:vm-100-disk-0", testutils.FakeSsh(), "lvm")
