"""
收敛编排测试
"""
import os
from dataclasses import replace

import pytest

from upgradef.core.format_migrator import FormatMigrator
from upgradef.core.models import ConvergenceState, Finding, PreflightResult, Severity
from upgradef.core.orchestrator import ConvergenceOrchestrator
from upgradef.errors import FatalPreflightError, OperatorAbort, UnsupportedVersionError

from conftest import (
    TODAY,
    FakeBackupTasks,
    FakeCluster,
    FakeOperator,
    FakePackages,
    FakePreflight,
    FakeServices,
    FakeVersionOracle,
    make_collaborators,
    snapshot_tree,
    write,
)

PROXMOXLIB_PATH = "usr/share/javascript/proxmox-widget-toolkit/proxmoxlib.js"


def run(context, collaborators):
    return ConvergenceOrchestrator(context, collaborators, today=lambda: TODAY).run()


class TestMigration:
    """测试从源版本开始的完整运行"""

    def test_full_run(self, context, collaborators):
        report = run(context, collaborators)

        assert report.states == [
            ConvergenceState.AT_SOURCE,
            ConvergenceState.MIGRATING,
            ConvergenceState.POST_INSTALL,
            ConvergenceState.DONE,
        ]
        sources_d = context.sources_list_d
        assert not context.sources_list.exists()
        assert {p.name for p in sources_d.glob("*.sources")} == {
            "debian.sources",
            "ceph.sources",
            "ceph-no-subscription.sources",
            "pve-enterprise.sources",
            "pve-no-subscription.sources",
        }
        assert "Enabled: no" in (sources_d / "pve-enterprise.sources").read_text()
        assert report.snapshot.created is True
        assert report.warnings == []
        assert report.soft_failures == []

    def test_post_install_artifacts(self, context, collaborators):
        report = run(context, collaborators)

        assert context.helper_script.exists()
        assert os.access(context.helper_script, os.X_OK)
        assert context.apt_hook.exists()
        assert "no-subscription-nag-v1" in (context.root / PROXMOXLIB_PATH).read_text()
        assert "reinstall proxmox-widget-toolkit" in collaborators.packages.calls
        assert collaborators.services.disabled == ["pve-ha-lrm", "pve-ha-crm"]
        assert context.apt_hook in report.changed_paths

    def test_second_run_is_noop(self, context, collaborators):
        run(context, collaborators)
        before = snapshot_tree(context.root)

        report = run(context, collaborators)

        assert snapshot_tree(context.root) == before
        assert report.changed_paths == []
        assert report.snapshot.created is False
        assert collaborators.packages.calls.count("reinstall proxmox-widget-toolkit") == 1
        assert collaborators.services.disabled == ["pve-ha-lrm", "pve-ha-crm"]

    def test_keep_legacy_format(self, context, collaborators):
        context = replace(context, modernize_sources=False)
        run(context, collaborators)

        assert "trixie-updates" in context.sources_list.read_text()
        assert context.sources_list_d.joinpath("pve-enterprise.list").read_text().startswith("# deb")
        assert (context.sources_list_d / "pve-no-subscription.sources").exists()

    def test_keep_channels(self, context, collaborators):
        context = replace(context, switch_to_no_subscription=False)
        run(context, collaborators)
        assert not (context.sources_list_d / "pve-no-subscription.sources").exists()
        assert "Enabled: no" not in (context.sources_list_d / "pve-enterprise.sources").read_text()

    def test_commented_free_tier_list_ends_enabled(self, context, collaborators):
        """被注释的 pve-no-subscription.list 迁移后免费通道仍然启用"""
        write(context.sources_list_d / "pve-no-subscription.list",
              "# deb http://download.proxmox.com/debian/pve bookworm pve-no-subscription\n")
        report = run(context, collaborators)

        declarations = FormatMigrator(context).load_declarations()
        free = [
            e for d in declarations for e in d.entries
            if e.enabled and "http://download.proxmox.com/debian/pve" in e.uris
        ]
        assert [(e.suites, e.components) for e in free] == [(("trixie",), ("pve-no-subscription",))]
        assert "Enabled: yes" in (context.sources_list_d / "pve-no-subscription.sources").read_text()
        assert report.warnings == []

    def test_dist_upgrade(self, context, collaborators):
        context = replace(context, run_dist_upgrade=True)
        run(context, collaborators)
        calls = collaborators.packages.calls
        assert calls.index("update") < calls.index(("dist_upgrade", context.dist_upgrade_options))

    def test_failed_update_skips_dist_upgrade(self, context):
        packages = FakePackages(failing={"update"})
        context = replace(context, run_dist_upgrade=True)
        report = run(context, make_collaborators(packages=packages))

        assert not any(isinstance(call, tuple) for call in packages.calls)
        assert report.final_state is ConvergenceState.DONE
        assert len(report.soft_failures) == 1


class TestFatalBeforeMutation:
    """测试致命错误不改动任何文件"""

    def test_unsupported_version(self, context, host_root):
        before = snapshot_tree(host_root)
        orchestrator = ConvergenceOrchestrator(
            context, make_collaborators(version_oracle=FakeVersionOracle("7", 4)), today=lambda: TODAY
        )
        with pytest.raises(UnsupportedVersionError):
            orchestrator.run()

        assert orchestrator.report.final_state is ConvergenceState.UNSUPPORTED
        assert snapshot_tree(host_root) == before
        assert not context.backup_dir.exists()

    def test_preflight_failure(self, context, host_root):
        before = snapshot_tree(host_root)
        preflight = FakePreflight(PreflightResult([
            Finding(Severity.WARNING, "tip"),
            Finding(Severity.ERROR, "storage not ready"),
        ]))
        with pytest.raises(FatalPreflightError, match="storage not ready"):
            run(context, make_collaborators(preflight=preflight))
        assert snapshot_tree(host_root) == before

    def test_preflight_skipped_without_pve(self, context):
        preflight = FakePreflight(PreflightResult([Finding(Severity.ERROR, "x")]))
        packages = FakePackages(installed=("proxmox-backup-server",))
        run(context, make_collaborators(preflight=preflight, packages=packages))
        assert preflight.calls == 0

    def test_preflight_warnings_reported(self, context):
        preflight = FakePreflight(PreflightResult([Finding(Severity.WARNING, "old kernel")]))
        report = run(context, make_collaborators(preflight=preflight))
        assert any("old kernel" in w for w in report.warnings)

    def test_requires_root(self, context, host_root, monkeypatch):
        monkeypatch.setattr("upgradef.core.probe.os.geteuid", lambda: 1000)
        before = snapshot_tree(host_root)
        with pytest.raises(FatalPreflightError, match="root"):
            run(replace(context, require_root=True), make_collaborators())
        assert snapshot_tree(host_root) == before

    def test_running_backup_tasks_declined(self, context, host_root):
        before = snapshot_tree(host_root)
        operator = FakeOperator(answer=False)
        collaborators = make_collaborators(
            packages=FakePackages(installed=("proxmox-backup-server",)),
            backup_tasks=FakeBackupTasks(running=2),
            operator=operator,
        )
        with pytest.raises(OperatorAbort):
            run(context, collaborators)
        assert len(operator.questions) == 1
        assert snapshot_tree(host_root) == before

    def test_cluster_declined(self, context, host_root):
        before = snapshot_tree(host_root)
        collaborators = make_collaborators(cluster=FakeCluster(True), operator=FakeOperator(answer=False))
        with pytest.raises(OperatorAbort):
            run(context, collaborators)
        assert snapshot_tree(host_root) == before

    def test_unattended_skips_prompts(self, context):
        operator = FakeOperator(answer=False)
        collaborators = make_collaborators(cluster=FakeCluster(True), operator=operator)
        report = run(replace(context, unattended=True), collaborators)
        assert operator.questions == []
        assert report.final_state is ConvergenceState.DONE


class TestTargetGeneration:
    """测试已是目标版本时的运行"""

    def test_skips_migration(self, context):
        collaborators = make_collaborators(version_oracle=FakeVersionOracle("9", 0))
        report = run(context, collaborators)

        assert ConvergenceState.AT_TARGET in report.states
        assert ConvergenceState.MIGRATING not in report.states
        assert report.snapshot is None
        assert "bookworm" in context.sources_list.read_text()
        assert len(report.warnings) == 3
        assert context.apt_hook.exists()


class TestServices:
    """测试集群相关服务的处理"""

    def test_clustered_services_untouched(self, context):
        services = FakeServices(active=("pve-ha-lrm", "pve-ha-crm", "corosync"))
        collaborators = make_collaborators(cluster=FakeCluster(True), services=services)
        run(replace(context, unattended=True), collaborators)
        assert services.disabled == []

    def test_enabled_but_inactive_disabled(self, context):
        services = FakeServices(enabled=("corosync",))
        run(context, make_collaborators(services=services))
        assert services.disabled == ["corosync"]

    def test_keep_ha_option(self, context):
        services = FakeServices(active=("pve-ha-lrm",))
        run(replace(context, disable_ha_when_standalone=False), make_collaborators(services=services))
        assert services.disabled == []


class TestSoftFailures:
    """测试单步失败不中断运行"""

    def test_reinstall_failure(self, context):
        packages = FakePackages(failing={"reinstall proxmox-widget-toolkit"})
        report = run(context, make_collaborators(packages=packages))
        assert report.final_state is ConvergenceState.DONE
        assert len(report.soft_failures) == 1
        assert "no-subscription-nag-v1" in (context.root / PROXMOXLIB_PATH).read_text()

    def test_missing_patch_target(self, context):
        (context.root / PROXMOXLIB_PATH).unlink()
        report = run(context, make_collaborators())
        assert report.final_state is ConvergenceState.DONE
        assert any("web-ui" in message for message in report.soft_failures)

    def test_service_failure(self, context):
        services = FakeServices(active=("pve-ha-lrm", "pve-ha-crm"), failing={"pve-ha-lrm"})
        report = run(context, make_collaborators(services=services))
        assert services.disabled == ["pve-ha-lrm", "pve-ha-crm"]
        assert len(report.soft_failures) == 1

    def test_collaborator_exception(self, context):
        class BrokenPackages(FakePackages):
            def install_if_missing(self, package):
                raise OSError("apt-get not found")

        report = run(replace(context, extra_packages=("htop",)), make_collaborators(packages=BrokenPackages()))
        assert report.final_state is ConvergenceState.DONE
        assert any("apt-get not found" in message for message in report.soft_failures)

    def test_extra_packages(self, context, collaborators):
        run(replace(context, extra_packages=("htop", "pve-manager")), collaborators)
        assert "install htop" in collaborators.packages.calls
        assert "install pve-manager" not in collaborators.packages.calls

    def test_ui_patches_disabled(self, context, collaborators):
        run(replace(context, apply_ui_patches=False), collaborators)
        assert not context.apt_hook.exists()
        assert "no-subscription-nag-v1" not in (context.root / PROXMOXLIB_PATH).read_text()
