"""
收敛编排模块

状态机:
    UNSUPPORTED  版本不受支持，致命，不做任何改动
    AT_SOURCE    预检（root、官方检查工具、备份任务、集群确认），失败即致命
    MIGRATING    备份 -> 格式迁移 -> 代号替换 -> 通道策略 -> 可选升级 -> 一致性检查
    AT_TARGET    已是目标版本，只做一致性检查
    POST_INSTALL 辅助脚本与 APT 钩子、UI 补丁、服务调整、额外软件包
    DONE

进入 MIGRATING 之前的任何致命错误都不会改动文件。MIGRATING 与 POST_INSTALL
中单步失败记为软失败，不中断运行。重复运行不会重复应用任何改动。
"""
import subprocess
from datetime import date
from typing import Callable, Optional

from loguru import logger

from .. import config
from ..config import UpgradeContext
from ..errors import CollaboratorError, FatalPreflightError, OperatorAbort, UnsupportedVersionError
from ..system.interfaces import Collaborators
from . import ui_patch
from .backup import BackupManager
from .channels import ChannelPolicy, verify_repositories
from .format_migrator import FormatMigrator
from .models import ConvergenceState, RunReport, SystemFactSet
from .patcher import IdempotentPatcher
from .probe import StateProbe

# 单步执行中视为软失败的异常
STEP_ERRORS = (CollaboratorError, OSError, subprocess.SubprocessError)


class ConvergenceOrchestrator:
    """把系统从源版本收敛到目标版本"""

    def __init__(
        self,
        context: UpgradeContext,
        collaborators: Collaborators,
        today: Optional[Callable[[], date]] = None,
    ):
        self.context = context
        self.collaborators = collaborators
        self.probe = StateProbe(context, collaborators)
        self.backup = BackupManager(context, today=today)
        self.migrator = FormatMigrator(context)
        self.channels = ChannelPolicy(context, self.migrator)
        self.patcher = IdempotentPatcher()
        self.report = RunReport()

    def run(self) -> RunReport:
        """执行一次收敛

        Returns:
            RunReport: 经过的状态、改动的文件、警告与软失败

        Raises:
            FatalPreflightError: 不支持的版本、预检失败或操作员中止，此时未做任何改动
        """
        self.report = RunReport()
        self.migrator.changes.clear()

        try:
            facts = self.probe.probe()
        except UnsupportedVersionError:
            self.report.enter(ConvergenceState.UNSUPPORTED)
            raise
        self.report.facts = facts

        self._check_root(facts)

        if facts.generation == "source":
            self.report.enter(ConvergenceState.AT_SOURCE)
            logger.info(f"当前为源版本 {self.context.source}，开始预检")
            self._preflight(facts)

            self.report.enter(ConvergenceState.MIGRATING)
            self._migrate()
        else:
            self.report.enter(ConvergenceState.AT_TARGET)
            logger.info(f"当前已是目标版本 {self.context.target}，跳过迁移")
            self._verify(self.migrator.load_declarations())

        self.report.enter(ConvergenceState.POST_INSTALL)
        self._post_install(facts)

        self.report.enter(ConvergenceState.DONE)
        logger.info(
            f"收敛完成: 改动 {len(self.report.changed_paths)} 个文件，"
            f"警告 {len(self.report.warnings)} 条，软失败 {len(self.report.soft_failures)} 条"
        )
        return self.report

    # ---- AT_SOURCE ----

    def _check_root(self, facts: SystemFactSet):
        if self.context.require_root and not facts.running_as_root:
            raise FatalPreflightError("需要 root 权限", "请使用 root 用户或 sudo 运行。")

    def _preflight(self, facts: SystemFactSet):
        if facts.has_pve:
            result = self.collaborators.preflight.run_full()
            for finding in result.findings:
                if finding not in result.errors:
                    self._warn(f"预检提示: {finding.message}")
            if not result.ok:
                details = "; ".join(f.message for f in result.errors)
                raise FatalPreflightError(
                    f"官方升级检查未通过: {details}",
                    f"修复 {config.PREFLIGHT_TOOL} --full 报告的 FAIL 项后重新运行。",
                )

        running = int(facts.get("backup_running_tasks", "0") or 0)
        if facts.has_backup_component and running > 0:
            self._warn(f"备份服务器有 {running} 个正在运行的任务，升级时可能损坏备份索引")
            self._confirm(
                "仍然继续吗？建议先停止数据存储或启用维护模式",
                "操作员因备份任务仍在运行而中止",
            )

        if facts.has_pve and facts.is_clustered:
            self._warn("本节点属于集群: 请逐个节点升级，并在节点之间确认集群健康")
            self._confirm(
                "已确认现在升级本节点是安全的吗？",
                "操作员中止，请规划好集群升级顺序",
            )

    def _confirm(self, question: str, abort_message: str):
        if self.context.unattended:
            logger.info(f"无人值守模式，自动确认: {question}")
            return
        if not self.collaborators.operator.confirm(question, default=False):
            raise OperatorAbort(abort_message)

    # ---- MIGRATING ----

    def _migrate(self):
        source = self.context.source.codename
        target = self.context.target.codename

        self.report.snapshot = self.backup.ensure_backup(self.context.repository_sources())

        declarations = self.migrator.load_declarations()
        if self.context.modernize_sources:
            declarations = self.migrator.migrate_to_structured_format(declarations, target)

        self.migrator.migrate_all_tokens(source, target)
        declarations = self.migrator.load_declarations()

        if self.context.switch_to_no_subscription:
            self.channels.apply(declarations)
            declarations = self.migrator.load_declarations()

        for path in self.migrator.changes:
            self.report.changed(path)

        if self.context.run_dist_upgrade:
            packages = self.collaborators.packages
            if self._step("apt update", packages.update):
                self._step(
                    "apt dist-upgrade",
                    lambda: packages.dist_upgrade(self.context.dist_upgrade_options),
                )

        self._verify(declarations)

    def _verify(self, declarations):
        warnings = verify_repositories(self.context, declarations)
        for message in warnings:
            self._warn(message)
        if not warnings:
            logger.info(f"所有启用的仓库都已指向 '{self.context.target.codename}'")

    # ---- POST_INSTALL ----

    def _post_install(self, facts: SystemFactSet):
        if self.context.apply_ui_patches:
            self._install_ui_patches()
        self._normalize_services(facts)
        for package in self.context.extra_packages:
            self._step(f"安装 {package}", lambda p=package: self.collaborators.packages.install_if_missing(p))

    def _install_ui_patches(self):
        helper_path = "/" + config.HELPER_SCRIPT
        if self.patcher.ensure_artifact(self.context.helper_script, ui_patch.render_helper_script(), 0o755):
            self.report.changed(self.context.helper_script)

        hook_created = self.patcher.ensure_artifact(self.context.apt_hook, ui_patch.render_apt_hook(helper_path))
        if hook_created:
            self.report.changed(self.context.apt_hook)
            packages = self.collaborators.packages
            if packages.is_installed(config.WIDGET_TOOLKIT_PACKAGE):
                self._step(
                    f"重新安装 {config.WIDGET_TOOLKIT_PACKAGE}",
                    lambda: packages.reinstall(config.WIDGET_TOOLKIT_PACKAGE),
                )

        for patch in ui_patch.UI_PATCHES:
            target = self.context.path(patch.target)
            if not target.is_file():
                if patch.optional:
                    logger.debug(f"可选 UI 补丁 {patch.name} 的目标文件不存在，跳过: {target}")
                    continue
                self._soft_fail(f"UI 补丁 {patch.name} 的目标文件不存在，已跳过: {target}")
                continue
            try:
                if self.patcher.apply_patch(target, patch.marker, patch.body):
                    self.report.changed(target)
            except OSError as e:
                self._soft_fail(f"UI 补丁 {patch.name} 应用失败: {e}")

    def _normalize_services(self, facts: SystemFactSet):
        if facts.is_clustered:
            logger.info("节点属于集群，保持集群服务不变")
            return
        if not self.context.disable_ha_when_standalone:
            return

        services = self.collaborators.services
        for name in self.context.ha_services:
            if not (services.is_active(name) or services.is_enabled(name)):
                logger.debug(f"服务未启用，跳过: {name}")
                continue
            if self._step(f"禁用服务 {name}", lambda n=name: services.disable_and_stop(n)):
                logger.info(f"单节点，已禁用并停止: {name}")

    # ---- helpers ----

    def _step(self, description: str, action: Callable[[], bool]) -> bool:
        """执行单个外部操作，失败记为软失败"""
        try:
            ok = action()
        except STEP_ERRORS as e:
            self._soft_fail(f"{description} 失败: {e}")
            return False
        if not ok:
            self._soft_fail(f"{description} 失败")
            return False
        return True

    def _warn(self, message: str):
        logger.warning(message)
        self.report.warnings.append(message)

    def _soft_fail(self, message: str):
        logger.warning(message)
        self.report.soft_failures.append(message)
