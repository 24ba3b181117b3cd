import itertools
import subprocess

import pytest

from archcrypt import luks_lvm
from archcrypt.errors import EncryptionSetupError, InsufficientSpaceError, VolumeError, WrongPassphraseError
from archcrypt.model import GIB, MIB, HomeSizing, InstallPlan

EXTENT = 4 * MIB


class Mapper:
    """Tracks device-mapper names the fake cryptsetup creates and removes."""

    def __init__(self, fake_run, correct="correct horse"):
        self.names = set()
        self.correct = correct
        self.leak_on_failure = False
        fake_run.on(["dmsetup", "info"], rc=lambda cmd: 0 if cmd[-1] in self.names else 1)
        fake_run.on(["cryptsetup", "close"], action=lambda cmd: self.names.discard(cmd[-1]))
        fake_run.on(["cryptsetup", "open"], handler=self._open)
        fake_run.on(["blkid", "-s", "UUID"], out="5f1c-luks-uuid\n")

    def _open(self, cmd, passphrase):
        ok = passphrase == self.correct
        if ok or self.leak_on_failure:
            self.names.add(cmd[-1])
        if ok:
            return 0, "", ""
        return 2, "", "No key available with this passphrase."


@pytest.fixture
def mapper(fake_run):
    return Mapper(fake_run)


def test_format_passes_passphrase_on_stdin(fake_run):
    luks_lvm.format_luks("/dev/sda2", "s3cret", label="archcrypt")

    cmd = fake_run.commands("cryptsetup")[0]
    assert cmd[:4] == ["cryptsetup", "-q", "--batch-mode", "luksFormat"]
    assert cmd[-3:] == ["--key-file", "-", "/dev/sda2"]
    assert "s3cret" not in cmd
    assert fake_run.inputs[0] == "s3cret"


def test_format_failure_and_empty_passphrase(fake_run):
    with pytest.raises(EncryptionSetupError):
        luks_lvm.format_luks("/dev/sda2", "")
    assert fake_run.calls == []

    fake_run.on(["cryptsetup", "-q", "--batch-mode", "luksFormat"], rc=5, err="Device /dev/sda2 is in use.")
    with pytest.raises(EncryptionSetupError) as info:
        luks_lvm.format_luks("/dev/sda2", "s3cret")
    assert "in use" in str(info.value)
    assert info.value.target == "/dev/sda2"


def test_open_returns_mapped_volume(fake_run, mapper):
    vol = luks_lvm.open_luks("/dev/sda2", "cryptlvm", "correct horse")

    assert vol.mapper_path == "/dev/mapper/cryptlvm"
    assert vol.uuid == "5f1c-luks-uuid"
    assert "cryptlvm" in mapper.names


def test_wrong_passphrase_leaves_no_mapping(fake_run, mapper):
    mapper.leak_on_failure = True
    with pytest.raises(WrongPassphraseError):
        luks_lvm.open_luks("/dev/sda2", "cryptlvm", "wrong")
    assert mapper.names == set()
    assert ["cryptsetup", "close", "cryptlvm"] in fake_run.calls


def test_existing_mapping_is_refused(fake_run, mapper):
    mapper.names.add("cryptlvm")
    with pytest.raises(EncryptionSetupError):
        luks_lvm.open_luks("/dev/sda2", "cryptlvm", "correct horse")
    assert not [c for c in fake_run.commands("cryptsetup") if c[1] == "open"]


def test_open_with_prompt_asks_fresh_each_time(fake_run, mapper):
    answers = iter(["first typo", "second typo", "correct horse"])
    asked = []

    def ask(attempt):
        asked.append(attempt)
        return next(answers)

    vol = luks_lvm.open_with_prompt("/dev/sda2", "cryptlvm", ask)
    assert vol.name == "cryptlvm"
    assert asked == [0, 1, 2]
    opened_with = [i for c, i in zip(fake_run.calls, fake_run.inputs) if c[:2] == ["cryptsetup", "open"]]
    assert opened_with == ["first typo", "second typo", "correct horse"]


def test_open_with_prompt_gives_up(fake_run, mapper):
    with pytest.raises(WrongPassphraseError):
        luks_lvm.open_with_prompt("/dev/sda2", "cryptlvm", lambda n: f"nope-{n}", attempts=2)
    assert len([c for c in fake_run.commands("cryptsetup") if c[1] == "open"]) == 2
    assert mapper.names == set()


@pytest.mark.parametrize(
    "free, root_gib, home",
    list(itertools.product(
        [2560, 5000, 10235],
        [1, 5, 10],
        [HomeSizing.full(), HomeSizing.minus_reserve(256 * MIB), HomeSizing.minus_reserve(1 * GIB)],
    )),
)
def test_plan_extents_never_exceeds_free(free, root_gib, home):
    try:
        root, home_ext = luks_lvm.plan_extents(free, EXTENT, root_gib * GIB, home)
    except InsufficientSpaceError:
        assert root_gib * GIB // EXTENT >= free - home.reserve_bytes // EXTENT
        return
    assert root == root_gib * GIB // EXTENT
    assert root + home_ext <= free
    assert home_ext > 0
    if home == HomeSizing.full():
        assert root + home_ext == free


def test_plan_extents_rounds_root_up():
    root, _ = luks_lvm.plan_extents(100, EXTENT, EXTENT + 1, HomeSizing.full())
    assert root == 2


def test_root_larger_than_vg():
    with pytest.raises(InsufficientSpaceError) as info:
        luks_lvm.plan_extents(1000, EXTENT, 10 * GIB, HomeSizing.full())
    assert info.value.target == "root"


def test_reserve_swallowing_home():
    with pytest.raises(InsufficientSpaceError) as info:
        luks_lvm.plan_extents(1000, EXTENT, 1000 * EXTENT - 10 * EXTENT, HomeSizing.minus_reserve(64 * MIB))
    assert info.value.target == "home"


def test_forty_gib_scenario():
    # 40 GiB disk: 1 MiB alignment, 1 GiB ESP, 16 MiB LUKS2 header, 1 MiB PV metadata,
    # GPT backup header trimmed off the end
    pv_bytes = 40 * GIB - 1 * MIB - 1 * GIB - 16 * MIB - 1 * MIB - 1 * MIB
    free = pv_bytes // EXTENT
    overhead = 40 * GIB - 1 * GIB - free * EXTENT

    root, home = luks_lvm.plan_extents(free, EXTENT, 20 * GIB, HomeSizing.minus_reserve(256 * MIB))

    assert root * EXTENT == 20 * GIB
    assert home * EXTENT == 40 * GIB - 1 * GIB - 20 * GIB - 256 * MIB - overhead
    assert (free - root - home) * EXTENT == 256 * MIB


def test_create_volumes_root_before_home(fake_run):
    fake_run.on(["vgs"], out="  4194304 10235 10235\n")
    vg = luks_lvm.create_volumes("/dev/mapper/cryptlvm", InstallPlan(device="/dev/sda", root_bytes=20 * GIB))

    lvcreate = fake_run.commands("lvcreate")
    assert [c[c.index("-n") + 1] for c in lvcreate] == ["root", "home"]
    assert lvcreate[0][lvcreate[0].index("-l") + 1] == "5120"
    assert fake_run.index(["pvcreate", "-y", "/dev/mapper/cryptlvm"]) < fake_run.index(
        ["vgcreate", "-y", "archvg", "/dev/mapper/cryptlvm"])
    assert vg.lv("root").path == "/dev/archvg/root"
    assert vg.lv("home").extents == 10235 - 5120 - 64
    assert vg.free_extents == 64


def test_create_volumes_checks_space_before_lvcreate(fake_run):
    fake_run.on(["vgs"], out="  4194304 1000 1000\n")
    with pytest.raises(InsufficientSpaceError):
        luks_lvm.create_volumes("/dev/mapper/cryptlvm", InstallPlan(device="/dev/sda", root_bytes=20 * GIB))
    assert fake_run.commands("lvcreate") == []


def test_create_volumes_tool_failure(fake_run):
    fake_run.on(["vgcreate"], rc=5, err="vg exists")
    with pytest.raises(VolumeError) as info:
        luks_lvm.create_volumes("/dev/mapper/cryptlvm", InstallPlan(device="/dev/sda"))
    assert not isinstance(info.value, InsufficientSpaceError)
    assert info.value.target == "archvg"


def test_uuid_falls_back_to_luks_header(fake_run, mapper):
    fake_run.on(["blkid", "-s", "UUID"], out="")
    fake_run.on(["cryptsetup", "luksUUID"], out="hdr-uuid\n")

    vol = luks_lvm.open_luks("/dev/sda2", "cryptlvm", "correct horse")
    assert vol.uuid == "hdr-uuid"


def test_unreadable_uuid_closes_mapping(fake_run, mapper):
    fake_run.on(["blkid", "-s", "UUID"], out="")

    with pytest.raises(EncryptionSetupError, match="UUID"):
        luks_lvm.open_luks("/dev/sda2", "cryptlvm", "correct horse")
    assert mapper.names == set()
    assert ["cryptsetup", "close", "cryptlvm"] in fake_run.calls


def test_open_timeout_is_typed_and_cleans_up(fake_run, mapper):
    def hang(cmd):
        mapper.names.add(cmd[-1])
        return subprocess.TimeoutExpired(cmd, 120.0)

    fake_run.on(["cryptsetup", "open"], raises=hang)

    with pytest.raises(EncryptionSetupError) as info:
        luks_lvm.open_luks("/dev/sda2", "cryptlvm", "correct horse")
    assert not isinstance(info.value, WrongPassphraseError)
    assert info.value.state["error"] == "TimeoutExpired"
    assert mapper.names == set()


def test_format_with_missing_cryptsetup(fake_run):
    fake_run.on(["cryptsetup"], raises=FileNotFoundError(2, "No such file or directory", "cryptsetup"))
    with pytest.raises(EncryptionSetupError) as info:
        luks_lvm.format_luks("/dev/sda2", "s3cret")
    assert info.value.state["cmd"] == ["cryptsetup"]


def test_lvm_timeout_is_a_volume_error(fake_run):
    fake_run.on(["pvcreate"], raises=lambda cmd: subprocess.TimeoutExpired(cmd, 60.0))
    with pytest.raises(VolumeError) as info:
        luks_lvm.create_volumes("/dev/mapper/cryptlvm", InstallPlan(device="/dev/sda"))
    assert info.value.state["cmd"][0] == "pvcreate"
    assert not fake_run.commands("lvcreate")


def test_release_helpers_swallow_hung_tools(fake_run):
    fake_run.on(["vgchange"], raises=lambda cmd: subprocess.TimeoutExpired(cmd, 60.0))
    fake_run.on(["cryptsetup", "close"], raises=lambda cmd: subprocess.TimeoutExpired(cmd, 60.0))
    assert luks_lvm.deactivate_vg("archvg") is False
    assert luks_lvm.close_luks("cryptlvm") is False
