"""Enable or disable KubeSphere components on a running cluster."""

from __future__ import annotations

import json
from collections.abc import Callable, Sequence

from . import runner

NAMESPACE = "kubesphere-system"
CLUSTER_CONFIGURATION = "clusterconfiguration"
INSTALLER_NAME = "ks-installer"
CONSOLE_CONFIG_NAME = "ks-console-config"
SONARQUBE_ALIASES = ("sonarqube", "sonar")
AVAILABLE_COMPONENTS = (
    "devops",
    "alerting",
    "auditing",
    "events",
    "logging",
    "metrics_server",
    "networkpolicy",
    "notification",
    "openpitrix",
    "servicemesh",
)


class ComponentError(RuntimeError):
    """Raised when a component cannot be toggled."""


def build_enable_patch(name: str, *, enabled: bool = True) -> str:
    """Return the JSON-Patch that flips ``spec.<name>.enabled`` on ks-installer."""

    return json.dumps([{"op": "replace", "path": f"/spec/{name}/enabled", "value": enabled}])


def build_sonarqube_patch(url: str, token: str) -> str:
    return json.dumps({"data": {"sonarqube.url": url, "sonarqube.token": token}})


def build_patch_command(kind: str, name: str, patch: str, *, patch_type: str) -> list[str]:
    return ["kubectl", "-n", NAMESPACE, "patch", kind, name, f"--type={patch_type}", "-p", patch]


def enable_component(
    name: str,
    *,
    enabled: bool = True,
    sonarqube: str | None = None,
    token: str | None = None,
    dry_run: bool = False,
    execute: Callable[[Sequence[str]], object] | None = None,
) -> list[str]:
    """Patch the cluster so ``name`` is enabled (or disabled) and return the command used.

    SonarQube is not a ClusterConfiguration switch; it is wired into the
    console config map with its server URL and token instead.
    """

    def _run(command: Sequence[str]) -> object:
        return runner.run_command(command, dry_run=dry_run).check()

    if name in SONARQUBE_ALIASES:
        if not sonarqube or not token:
            raise ComponentError("SonarQube or token is empty, please provide --sonarqube")
        command = build_patch_command(
            "configmap",
            CONSOLE_CONFIG_NAME,
            build_sonarqube_patch(sonarqube, token),
            patch_type="merge",
        )
    elif name in AVAILABLE_COMPONENTS:
        command = build_patch_command(
            CLUSTER_CONFIGURATION,
            INSTALLER_NAME,
            build_enable_patch(name, enabled=enabled),
            patch_type="json",
        )
    else:
        raise ComponentError(f"not support [{name}] yet")

    (execute or _run)(command)
    return command
