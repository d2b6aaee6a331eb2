"""
订阅提示 (nag) 补丁

包含 UI 文件的追加补丁、包升级后重新应用补丁的辅助脚本，以及调用该脚本的
APT Post-Invoke 钩子。脚本由同一份补丁列表生成，与 Python 侧的补丁保持一致。
"""
from dataclasses import dataclass
from typing import Sequence

from .models import PatchMarker

HELPER_MARKER = PatchMarker("no-nag-helper-v1")
HOOK_MARKER = PatchMarker("no-nag-hook-v1")
HEREDOC_END = "UPGRADEF_PATCH_EOF"


@dataclass(frozen=True)
class UiPatch:
    name: str
    target: str  # 主机上的绝对路径
    marker: PatchMarker
    body: str
    optional: bool = False  # 目标不存在时不记为软失败


PROXMOXLIB_PATCH = UiPatch(
    name="web-ui",
    target="/usr/share/javascript/proxmox-widget-toolkit/proxmoxlib.js",
    marker=PatchMarker("no-subscription-nag-v1"),
    body="\n".join([
        PatchMarker("no-subscription-nag-v1").render("//"),
        "(function () {",
        "    if (typeof Proxmox !== 'undefined' && Proxmox.Utils) {",
        "        Proxmox.Utils.checked_command = function (orig_cmd) { orig_cmd(); };",
        "    }",
        "})();",
        "",
    ]),
)

MOBILE_PATCH = UiPatch(
    name="mobile-ui",
    target="/usr/share/pve-yew-mobile-gui/index.html.tpl",
    optional=True,
    marker=PatchMarker("mobile-nag-v1"),
    body="\n".join([
        PatchMarker("mobile-nag-v1").render("<!--", "-->"),
        "<script>",
        "  document.addEventListener('DOMContentLoaded', function () {",
        "    new MutationObserver(function () {",
        "      document.querySelectorAll('dialog').forEach(function (d) {",
        "        if (/subscription/i.test(d.textContent)) { d.remove(); }",
        "      });",
        "    }).observe(document.body, { childList: true, subtree: true });",
        "  });",
        "</script>",
        "",
    ]),
)

UI_PATCHES = (PROXMOXLIB_PATCH, MOBILE_PATCH)


def render_helper_script(patches: Sequence[UiPatch] = UI_PATCHES) -> str:
    """生成包升级后重新应用补丁的 shell 脚本"""
    lines = [
        "#!/bin/sh",
        HELPER_MARKER.render(),
        "# Re-applies UI patches after package upgrades. Generated by upgradef.",
        "",
    ]
    for patch in patches:
        lines.extend([
            f"if [ -f '{patch.target}' ] && ! grep -qF '{patch.marker.token}' '{patch.target}'; then",
            f"    cat >> '{patch.target}' <<'{HEREDOC_END}'",
            patch.body.rstrip("\n"),
            HEREDOC_END,
            "fi",
            "",
        ])
    lines.append("exit 0")
    return "\n".join(lines) + "\n"


def render_apt_hook(helper_path: str) -> str:
    """生成调用辅助脚本的 APT 钩子"""
    return "\n".join([
        HOOK_MARKER.render("//"),
        f'DPkg::Post-Invoke {{ "if [ -x {helper_path} ]; then {helper_path} || true; fi"; }};',
        "",
    ])
