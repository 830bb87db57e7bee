"""Entry points for the ks CLI."""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from pathlib import Path
from typing import Sequence

from . import component, runner
from .kind_cluster import bootstrap


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ks",
        description="Helpers for running KubeSphere on local kind clusters.",
    )
    parser.set_defaults(handler=None)

    subparsers = parser.add_subparsers(dest="section")

    install_parser = subparsers.add_parser(
        "install",
        help="Install KubeSphere onto a fresh cluster.",
    )
    install_subparsers = install_parser.add_subparsers(dest="command")

    kind_parser = install_subparsers.add_parser(
        "kind",
        help="Create a kind cluster, preload images, and install KubeSphere.",
        description="Example: ks install kind --components devops",
    )
    kind_parser.add_argument(
        "--config",
        help="Path to a TOML install profile; explicit flags override its values.",
    )
    kind_parser.add_argument(
        "-n",
        "--name",
        help=f"The name of the kind cluster (default: {bootstrap.DEFAULT_CLUSTER_NAME}).",
    )
    kind_parser.add_argument(
        "-v",
        "--version",
        dest="kubernetes_version",
        help=(
            "The Kubernetes version of the kind node image "
            f"(default: {bootstrap.DEFAULT_KUBERNETES_VERSION})."
        ),
    )
    kind_parser.add_argument(
        "--port-mappings",
        "--portMappings",
        dest="port_mappings",
        action="append",
        default=[],
        metavar="CONTAINER=HOST[,...]",
        help="Extra port mappings for the control-plane node; repeatable.",
    )
    kind_parser.add_argument(
        "--ks-version",
        "--ksVersion",
        dest="ks_version",
        help=f"The version of KubeSphere (default: {bootstrap.DEFAULT_KS_VERSION}).",
    )
    kind_parser.add_argument(
        "--components",
        action="append",
        default=[],
        metavar="NAME[,...]",
        help="Components whose images should be preloaded, e.g. devops; repeatable.",
    )
    kind_parser.add_argument(
        "--reset",
        action="store_true",
        default=None,
        help="Reset KubeSphere components to a nightly build after installing.",
    )
    kind_parser.add_argument(
        "--nightly",
        help="Nightly date for --reset: '20200101', '2020-01-01', or 'latest' for yesterday.",
    )
    kind_parser.add_argument(
        "--strict-sync",
        action="store_true",
        default=None,
        help="Abort when any image fails to preload instead of continuing.",
    )
    kind_parser.add_argument(
        "--kind-config",
        help="Keep the rendered kind configuration at this path.",
    )
    kind_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the commands without executing them.",
    )
    kind_parser.set_defaults(handler=_handle_install_kind)

    component_parser = subparsers.add_parser(
        "component",
        help="Manage KubeSphere components on the current cluster.",
    )
    component_subparsers = component_parser.add_subparsers(dest="command")

    enable_parser = component_subparsers.add_parser(
        "enable",
        help="Enable or disable a KubeSphere component.",
    )
    enable_parser.add_argument(
        "-n",
        "--name",
        required=True,
        help=(
            "The component to enable or disable: "
            + ", ".join((*component.AVAILABLE_COMPONENTS, "sonarqube"))
            + ". SonarQube also needs --sonarqube and --sonarqube-token."
        ),
    )
    enable_parser.add_argument(
        "-t",
        "--toggle",
        action="store_true",
        help="Disable the component instead of enabling it.",
    )
    enable_parser.add_argument("--sonarqube", help="The SonarQube URL.")
    enable_parser.add_argument("--sonar", dest="sonarqube", help=argparse.SUPPRESS)
    enable_parser.add_argument("--sonarqube-token", help="The token of SonarQube.")
    enable_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the patch command without executing it.",
    )
    enable_parser.set_defaults(handler=_handle_component_enable)

    return parser


def _split_values(values: Sequence[str]) -> list[str]:
    return [part.strip() for value in values for part in value.split(",") if part.strip()]


def _resolve_path(value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (Path.cwd() / path).resolve()
    return path


def build_install_profile(args: argparse.Namespace) -> bootstrap.InstallProfile:
    """Merge the optional TOML profile with explicitly supplied flags."""

    if args.config:
        profile = bootstrap.load_install_config(_resolve_path(args.config))
    else:
        profile = bootstrap.InstallProfile(
            options=bootstrap.InstallOptions(), catalog=bootstrap.ImageCatalog()
        )

    overrides: dict[str, object] = {}
    for key in ("name", "kubernetes_version", "ks_version", "nightly", "reset", "strict_sync"):
        value = getattr(args, key)
        if value is not None:
            overrides[key] = value
    if args.port_mappings:
        mappings = dict(profile.options.port_mappings)
        mappings.update(bootstrap.parse_port_mappings(args.port_mappings))
        overrides["port_mappings"] = mappings
    if args.components:
        overrides["components"] = _split_values(args.components)
    if args.kind_config:
        overrides["kind_config"] = _resolve_path(args.kind_config)
    overrides["dry_run"] = bool(args.dry_run)

    profile.options = replace(profile.options, **overrides)
    return profile


def _handle_install_kind(args: argparse.Namespace) -> int:
    try:
        profile = build_install_profile(args)
        report = bootstrap.run_install(profile.options, catalog=profile.catalog)
    except bootstrap.InstallError as exc:
        print(exc, file=sys.stderr)
        return 1

    if report.failures:
        print(
            f"{len(report.failures)} image(s) could not be preloaded; "
            "rerun with --strict-sync to treat this as an error.",
            file=sys.stderr,
        )
    return 0


def _handle_component_enable(args: argparse.Namespace) -> int:
    try:
        component.enable_component(
            args.name,
            enabled=not args.toggle,
            sonarqube=args.sonarqube,
            token=args.sonarqube_token,
            dry_run=args.dry_run,
        )
    except (
        component.ComponentError,
        runner.CommandError,
        runner.CommandLaunchError,
        runner.RelayError,
    ) as exc:
        print(exc, file=sys.stderr)
        return 1
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    handler = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 1

    return handler(args)
