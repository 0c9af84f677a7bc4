# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/nixiform/remote/scripts.py

"""
Shell snippets run on nodes.

Templates only carry structure; every value is interpolated through the
``quote`` filter so inventory or evaluator supplied strings never reach the
remote shell unescaped.
"""

from __future__ import annotations

import shlex
from textwrap import dedent

from jinja2 import DictLoader, Environment, StrictUndefined

ALIVE_MARKER = "nixiform-alive"
MANAGED_MARKER = "/etc/NIXOS"
HARDWARE_FILE = "/etc/nixos/hardware-configuration.nix"
NETWORKING_FILE = "/etc/nixos/networking.nix"
SYSTEM_PROFILE = "/nix/var/nix/profiles/system"
BOOTED_SYSTEM = "/run/booted-system"

# switch-to-configuration reports failed units with 4
EXIT_PARTIAL = 4
EXIT_NEEDS_REBOOT = 100
EXIT_NOT_MANAGED = 101

TEMPLATES = {
    "probe": "echo {{ marker | quote }}",

    "is_managed": "test -e {{ marker | quote }}",

    "descriptors_present": dedent("""\
        test -e {{ marker | quote }} \\
          && test -f {{ hardware | quote }} \\
          && test -f {{ networking | quote }}"""),

    "boot_id": "cat /proc/sys/kernel/random/boot_id",

    "arch": "uname -m && uname -s",

    "read_file": "cat {{ path | quote }}",

    "bootstrap": dedent("""\
        set -eu
        curl -fsSL {{ url | quote }} \\
          | env PROVIDER={{ provider | quote }} NIX_CHANNEL={{ channel | quote }} NO_REBOOT=1 bash -x"""),

    "reboot": "nohup sh -c 'sleep 1; systemctl reboot' >/dev/null 2>&1 &",

    "secrets_list": dedent("""\
        install -d -m 0755 {{ files_dir | quote }} \\
          && ls -1A {{ files_dir | quote }}"""),

    "secrets_remove": "rm -rf --{% for p in paths %} {{ p | quote }}{% endfor %}",

    "secrets_receive": "tar -xzf - -C {{ files_dir | quote }}",

    "resolve_owner": dedent("""\
        id -u {{ user | quote }} >/dev/null 2>&1 || echo missing-user
        getent group {{ group | quote }} >/dev/null 2>&1 || echo missing-group"""),

    "secrets_chown": "chown -R {{ owner | quote }} {{ path | quote }}",

    "secrets_chmod": dedent("""\
        find {{ path | quote }} -type d -exec chmod {{ dir_mode | quote }} {} + \\
          && find {{ path | quote }} ! -type d -exec chmod {{ mode | quote }} {} +"""),

    "secrets_link": dedent("""\
        mkdir -p "$(dirname {{ link | quote }})" \\
          && ln -sfn {{ target | quote }} {{ link | quote }}"""),

    "realise": "nix-store --realise {{ drv | quote }}{% for o in options %} {{ o | quote }}{% endfor %}",

    "import_bundle": "gunzip | nix-store --import",

    "activate": dedent("""\
        set -u
        system={{ path | quote }}
        action={{ action | quote }}
        [ -e {{ marker | quote }} ] || exit {{ not_managed }}
        for f in kernel initrd kernel-modules; do
          booted="$(readlink -f {{ booted | quote }}"/$f" || true)"
          wanted="$(readlink -f "$system/$f" || true)"
          if [ -n "$booted" ] && [ "$booted" != "$wanted" ]; then
            exit {{ needs_reboot }}
          fi
        done
        if [ "$action" = switch ]; then
          nix-env -p {{ profile | quote }} --set "$system" || exit 1
        fi
        exec "$system/bin/switch-to-configuration" "$action"
        """),

    "install_boot": dedent("""\
        set -eu
        system={{ path | quote }}
        nix-env -p {{ profile | quote }} --set "$system"
        "$system/bin/switch-to-configuration" boot"""),

    "diff_closures": "nix store diff-closures /run/current-system {{ path | quote }}",
}

_env = Environment(
    loader=DictLoader(TEMPLATES),
    undefined=StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
)
_env.filters["quote"] = lambda value: shlex.quote(str(value))


def render(name: str, **params) -> str:
    """Render the named snippet with *params*."""
    return _env.get_template(name).render(**params)


def activate(path: str, action: str) -> str:
    return render(
        "activate",
        path=path,
        action=action,
        marker=MANAGED_MARKER,
        profile=SYSTEM_PROFILE,
        booted=BOOTED_SYSTEM,
        not_managed=EXIT_NOT_MANAGED,
        needs_reboot=EXIT_NEEDS_REBOOT,
    )
