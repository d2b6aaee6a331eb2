"""
仓库通道策略测试
"""
from upgradef.core import deb822
from upgradef.core.channels import (
    ChannelPolicy,
    free_tier_entry,
    is_enterprise,
    toggle_legacy_lines,
    toggle_structured_stanzas,
    verify_repositories,
)
from upgradef.core.format_migrator import FormatMigrator

from conftest import write

ENTERPRISE_TRIXIE = "deb https://enterprise.proxmox.com/debian/pve trixie pve-enterprise\n"


def apply_policy(context):
    migrator = FormatMigrator(context)
    changed = ChannelPolicy(context, migrator).apply(migrator.load_declarations())
    return migrator, changed


class TestFreeTierEntry:
    """测试免费通道推导"""

    def test_pve(self):
        entry = deb822.parse_legacy_line(ENTERPRISE_TRIXIE)
        free = free_tier_entry(entry)
        assert free.uris == ("http://download.proxmox.com/debian/pve",)
        assert free.components == ("pve-no-subscription",)
        assert free.suites == ("trixie",)
        assert ("Signed-By", "/usr/share/keyrings/proxmox-archive-keyring.gpg") in free.options

    def test_ceph_keeps_signed_by(self):
        entry = deb822.parse_legacy_line(
            "deb [signed-by=/etc/k.gpg] https://enterprise.proxmox.com/debian/ceph-squid trixie enterprise"
        )
        free = free_tier_entry(entry)
        assert free.components == ("no-subscription",)
        assert free.options == (("Signed-By", "/etc/k.gpg"),)


class TestChannelPolicy:
    """测试收费通道切换"""

    def test_legacy_enterprise_switched(self, context):
        enterprise = write(context.sources_list_d / "pve-enterprise.list", ENTERPRISE_TRIXIE)
        context.sources_list.unlink()
        (context.sources_list_d / "ceph.list").unlink()

        migrator, changed = apply_policy(context)

        free_path = context.sources_list_d / "pve-no-subscription.sources"
        assert enterprise.read_text() == "# " + ENTERPRISE_TRIXIE
        assert changed == [enterprise, free_path]
        content = free_path.read_text()
        assert "URIs: http://download.proxmox.com/debian/pve\n" in content
        assert "Components: pve-no-subscription\n" in content
        assert migrator.changes == changed

    def test_structured_enterprise_disabled(self, context):
        path = write(context.sources_list_d / "pve-enterprise.sources", """\
Types: deb
URIs: https://enterprise.proxmox.com/debian/pve
Suites: trixie
Components: pve-enterprise
Enabled: yes

Types: deb
URIs: http://deb.debian.org/debian
Suites: trixie
Components: main
""")
        apply_policy(context)

        stanzas = deb822.parse_structured(path.read_text())
        assert stanzas[0].enabled is False
        assert stanzas[1].enabled is True
        assert "Enabled: yes" not in path.read_text()

    def test_second_apply_is_noop(self, context):
        apply_policy(context)
        _, changed = apply_policy(context)
        assert changed == []

    def test_existing_free_tier_not_duplicated(self, context):
        write(context.sources_list_d / "pve-enterprise.list", ENTERPRISE_TRIXIE)
        write(context.sources_list_d / "pve-install-repo.list",
              "deb http://download.proxmox.com/debian/pve trixie pve-no-subscription\n")
        _, changed = apply_policy(context)
        assert context.sources_list_d / "pve-enterprise.list" in changed
        assert not (context.sources_list_d / "pve-no-subscription.sources").exists()

    def test_existing_target_file_kept(self, context):
        """目标文件名被占用且未提供免费通道时，改用其他文件名"""
        existing = write(context.sources_list_d / "pve-no-subscription.sources", "# managed elsewhere\n")
        _, changed = apply_policy(context)

        assert existing.read_text() == "# managed elsewhere\n"
        replacement = context.sources_list_d / "pve-no-subscription-upgradef.sources"
        assert replacement in changed
        assert "Components: pve-no-subscription\n" in replacement.read_text()

    def test_disabled_structured_free_tier_reenabled(self, context):
        """已有被禁用的同一免费通道时重新启用，而不是另建文件"""
        context.sources_list.unlink()
        (context.sources_list_d / "ceph.list").unlink()
        existing = write(context.sources_list_d / "pve-no-subscription.sources", """\
Types: deb
URIs: http://download.proxmox.com/debian/pve
Suites: bookworm
Components: pve-no-subscription
Enabled: no
""")
        _, changed = apply_policy(context)

        assert changed == [context.sources_list_d / "pve-enterprise.list", existing]
        assert "Enabled: yes\n" in existing.read_text()
        assert sorted(p.name for p in context.sources_list_d.iterdir()) == [
            "pve-enterprise.list", "pve-no-subscription.sources",
        ]
        warnings = verify_repositories(context, FormatMigrator(context).load_declarations())
        assert not any("禁用" in w for w in warnings)

    def test_commented_legacy_free_tier_reenabled(self, context):
        context.sources_list.unlink()
        (context.sources_list_d / "ceph.list").unlink()
        existing = write(context.sources_list_d / "pve-no-subscription.list",
                         "# deb http://download.proxmox.com/debian/pve bookworm pve-no-subscription\n")
        apply_policy(context)

        assert existing.read_text() == "deb http://download.proxmox.com/debian/pve bookworm pve-no-subscription\n"
        assert not (context.sources_list_d / "pve-no-subscription.sources").exists()

    def test_toggle_legacy_only_touches_matching(self):
        content = "# deb http://a/debian trixie main\n# deb https://enterprise.proxmox.com/debian/pve trixie pve-enterprise\n"
        assert toggle_legacy_lines(content, lambda e: "http://a/debian" in e.uris, enable=True) == (
            "deb http://a/debian trixie main\n# deb https://enterprise.proxmox.com/debian/pve trixie pve-enterprise\n"
        )

    def test_disable_keeps_separators(self):
        content = "Types: deb\nURIs: https://enterprise.proxmox.com/debian/pve\nSuites: trixie\n\n\n"
        assert toggle_structured_stanzas(content, is_enterprise, enable=False) == (
            "Types: deb\nURIs: https://enterprise.proxmox.com/debian/pve\nSuites: trixie\nEnabled: no\n\n\n"
        )


class TestVerifyRepositories:
    """测试迁移后的一致性检查"""

    def test_leftover_codename(self, context):
        warnings = verify_repositories(context, FormatMigrator(context).load_declarations())
        assert len([w for w in warnings if "bookworm" in w]) == 3

    def test_commented_leftover_ignored(self, context):
        context.sources_list.write_text("# deb http://deb.debian.org/debian bookworm main\n")
        (context.sources_list_d / "ceph.list").unlink()
        (context.sources_list_d / "pve-enterprise.list").unlink()
        assert verify_repositories(context, FormatMigrator(context).load_declarations()) == []

    def test_mixed_channels(self, context):
        context.sources_list.unlink()
        (context.sources_list_d / "ceph.list").unlink()
        write(context.sources_list_d / "pve-enterprise.list", ENTERPRISE_TRIXIE)
        write(context.sources_list_d / "pve-no-subscription.list",
              "deb http://download.proxmox.com/debian/pve trixie pve-no-subscription\n")
        warnings = verify_repositories(context, FormatMigrator(context).load_declarations())
        assert len(warnings) == 1
        assert "no-subscription" in warnings[0]

    def test_all_proxmox_disabled(self, context):
        context.sources_list.unlink()
        (context.sources_list_d / "ceph.list").unlink()
        write(context.sources_list_d / "pve-enterprise.list", "# " + ENTERPRISE_TRIXIE)
        write(context.sources_list_d / "pve-no-subscription.sources", """\
Types: deb
URIs: http://download.proxmox.com/debian/pve
Suites: trixie
Components: pve-no-subscription
Enabled: no
""")
        warnings = verify_repositories(context, FormatMigrator(context).load_declarations())
        assert len(warnings) == 1
        assert "Proxmox" in warnings[0]
