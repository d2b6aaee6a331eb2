"""
测试公共夹具: 外部协作组件替身与模拟的主机文件系统
"""
from datetime import date
from pathlib import Path

import pytest
from loguru import logger

from upgradef.config import UpgradeContext
from upgradef.core.models import PreflightResult
from upgradef.system.interfaces import Collaborators

TODAY = date(2025, 8, 1)

SOURCES_LIST = """\
# deb cdrom:[Debian GNU/Linux 12.5.0 _Bookworm_ - Official amd64 NETINST]/ bookworm main
deb http://deb.debian.org/debian bookworm main contrib
deb http://deb.debian.org/debian bookworm-updates main contrib
deb http://security.debian.org/debian-security bookworm-security main contrib
"""
PVE_ENTERPRISE_LIST = "deb https://enterprise.proxmox.com/debian/pve bookworm pve-enterprise\n"
CEPH_LIST = "deb https://enterprise.proxmox.com/debian/ceph-quincy bookworm enterprise\n"
PROXMOXLIB = "var Proxmox = {};\n"


class FakeVersionOracle:
    def __init__(self, major="8", minor=4, error=None):
        self.major = major
        self.minor = minor
        self.error = error

    def current_generation(self):
        if self.error is not None:
            raise self.error
        return self.major

    def current_minor(self):
        return self.minor


class FakePreflight:
    def __init__(self, result=None):
        self.result = result or PreflightResult()
        self.calls = 0

    def run_full(self):
        self.calls += 1
        return self.result


class FakeCluster:
    def __init__(self, clustered=False):
        self.clustered = clustered

    def is_clustered(self):
        return self.clustered


class FakePackages:
    def __init__(self, installed=("pve-manager", "proxmox-widget-toolkit"), failing=()):
        self.installed = set(installed)
        self.failing = set(failing)
        self.calls = []

    def _result(self, name):
        self.calls.append(name)
        return name not in self.failing

    def update(self):
        return self._result("update")

    def dist_upgrade(self, options=()):
        self.calls.append(("dist_upgrade", tuple(options)))
        return "dist_upgrade" not in self.failing

    def reinstall(self, package):
        return self._result(f"reinstall {package}")

    def install_if_missing(self, package):
        if package in self.installed:
            return True
        ok = self._result(f"install {package}")
        if ok:
            self.installed.add(package)
        return ok

    def is_installed(self, package):
        return package in self.installed


class FakeServices:
    def __init__(self, active=(), enabled=(), failing=()):
        self.active = set(active)
        self.enabled = set(enabled)
        self.failing = set(failing)
        self.disabled = []

    def is_active(self, name):
        return name in self.active

    def is_enabled(self, name):
        return name in self.enabled

    def disable_and_stop(self, name):
        self.disabled.append(name)
        if name in self.failing:
            return False
        self.active.discard(name)
        self.enabled.discard(name)
        return True


class FakeBackupTasks:
    def __init__(self, running=0):
        self.running = running
        self.calls = 0

    def running_tasks(self):
        self.calls += 1
        return self.running


class FakeOperator:
    def __init__(self, answer=True):
        self.answer = answer
        self.questions = []

    def confirm(self, question, default=False):
        self.questions.append(question)
        return self.answer


def make_collaborators(**overrides):
    parts = {
        'version_oracle': FakeVersionOracle(),
        'preflight': FakePreflight(),
        'cluster': FakeCluster(),
        'packages': FakePackages(),
        'services': FakeServices(active=("pve-ha-lrm", "pve-ha-crm")),
        'backup_tasks': FakeBackupTasks(),
        'operator': FakeOperator(),
    }
    parts.update(overrides)
    return Collaborators(**parts)


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding='utf-8')
    return path


def snapshot_tree(root: Path):
    """{相对路径: 内容}，用于比较两次运行之间的文件状态"""
    return {
        str(p.relative_to(root)): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.fixture
def host_root(tmp_path):
    """模拟一台 PVE 8 主机的文件系统"""
    root = tmp_path / "root"
    write(root / "etc/apt/sources.list", SOURCES_LIST)
    write(root / "etc/apt/sources.list.d/pve-enterprise.list", PVE_ENTERPRISE_LIST)
    write(root / "etc/apt/sources.list.d/ceph.list", CEPH_LIST)
    write(root / "usr/share/javascript/proxmox-widget-toolkit/proxmoxlib.js", PROXMOXLIB)
    return root


@pytest.fixture
def context(host_root):
    return UpgradeContext(
        root=host_root,
        backup_root=Path("/var/backups/upgradef"),
        require_root=False,
    )


@pytest.fixture
def collaborators():
    return make_collaborators()


@pytest.fixture(autouse=True)
def reset_logger():
    """CLI 测试会重新配置日志，测试结束后移除所有处理器"""
    yield
    logger.remove()
