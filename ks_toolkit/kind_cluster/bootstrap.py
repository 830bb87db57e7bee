from __future__ import annotations

import tempfile
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path

from jinja2 import Environment, StrictUndefined

from .. import runner
from .sync import SYNC_ERRORS, BatchResult, Executor, ParallelSyncBatch

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError as exc:  # pragma: no cover - Python < 3.11 guard
    raise SystemExit("python 3.11+ is required to load TOML install profiles") from exc

DEFAULT_CLUSTER_NAME = "kind"
DEFAULT_KUBERNETES_VERSION = "v1.18.2"
DEFAULT_KS_VERSION = "v3.0.0"
KIND_NODE_IMAGE = "kindest/node"
KIND_CONFIG_NAME = "config.yaml"
MANIFEST_BASE_URL = "https://github.com/kubesphere/ks-installer/releases/download"
MANIFEST_FILES = ("kubesphere-installer.yaml", "cluster-configuration.yaml")
NIGHTLY_LATEST = "latest"
NIGHTLY_DATE_LAYOUTS = ("%Y-%m-%d", "%Y%m%d")
IMAGE_PULL_POLICY_HINT = (
    "kubectl -n kubesphere-system patch deploy ks-installer --type=json "
    "-p='[{\"op\":\"replace\",\"path\":\"/spec/template/spec/containers/0/imagePullPolicy\","
    "\"value\":\"IfNotPresent\"}]'"
)

KIND_CONFIG_TEMPLATE = """\
kind: Cluster
apiVersion: kind.x-k8s.io/v1alpha4
nodes:
- role: control-plane
  kubeadmConfigPatches:
  - |
    kind: InitConfiguration
    nodeRegistration:
      kubeletExtraArgs:
        node-labels: "ingress-ready=true"
  extraPortMappings:{% if not port_mappings %} []{% endif %}

{% for container_port, host_port in port_mappings %}
  - containerPort: {{ container_port }}
    hostPort: {{ host_port }}
    protocol: TCP
{% endfor %}
"""

_ENVIRONMENT = Environment(
    trim_blocks=True,
    lstrip_blocks=True,
    keep_trailing_newline=True,
    undefined=StrictUndefined,
)


class InstallError(RuntimeError):
    """Raised when the kind install workflow cannot complete."""


@dataclass(slots=True)
class ImageCatalog:
    """Images that have to be present in the cluster before KubeSphere starts."""

    kubesphere: list[str] = field(
        default_factory=lambda: [
            "kubesphere/ks-installer",
            "kubesphere/ks-apiserver",
            "kubesphere/ks-controller-manager",
            "kubesphere/ks-console",
        ]
    )
    dependencies: list[str] = field(
        default_factory=lambda: [
            "redis:5.0.5-alpine",
            "osixia/openldap:1.3.0",
            "minio/minio:RELEASE.2019-08-07T01-59-21Z",
            "mysql:8.0.11",
        ]
    )
    components: dict[str, list[str]] = field(
        default_factory=lambda: {
            "devops": [
                "kubesphere/jenkins-uc:v3.0.0",
                "jenkins/jenkins:2.176.2",
                "jenkins/jnlp-slave:3.27-1",
                "kubesphere/builder-base:v2.1.0",
                "kubesphere/builder-nodejs:v2.1.0",
                "kubesphere/builder-go:v2.1.0",
                "kubesphere/builder-maven:v2.1.0",
            ],
        }
    )
    nightly: list[str] = field(
        default_factory=lambda: [
            "kubespheredev/ks-installer",
            "kubespheredev/ks-apiserver",
            "kubespheredev/ks-controller-manager",
            "kubespheredev/ks-console",
        ]
    )

    def core_images(self, ks_version: str) -> list[str]:
        return [f"{repo}:{ks_version}" for repo in self.kubesphere] + list(self.dependencies)

    def component_images(self, component: str) -> list[str] | None:
        images = self.components.get(component)
        return list(images) if images is not None else None

    def nightly_images(self, tag: str) -> list[str]:
        return [f"{repo}:{tag}" for repo in self.nightly]


@dataclass(slots=True)
class InstallOptions:
    """Everything ``ks install kind`` needs to bring up a cluster."""

    name: str = DEFAULT_CLUSTER_NAME
    kubernetes_version: str = DEFAULT_KUBERNETES_VERSION
    port_mappings: dict[str, str] = field(default_factory=dict)
    ks_version: str = DEFAULT_KS_VERSION
    components: list[str] = field(default_factory=list)
    reset: bool = False
    nightly: str = ""
    strict_sync: bool = False
    kind_config: Path | None = None
    dry_run: bool = False

    @property
    def context(self) -> str:
        return f"kind-{self.name}"

    @property
    def node_image(self) -> str:
        return f"{KIND_NODE_IMAGE}:{self.kubernetes_version}"


@dataclass(slots=True)
class InstallProfile:
    """Options and image catalog loaded from a TOML profile."""

    options: InstallOptions
    catalog: ImageCatalog


@dataclass(slots=True)
class InstallReport:
    batches: list[BatchResult] = field(default_factory=list)
    nightly_tag: str = ""

    @property
    def failures(self) -> list[str]:
        return [result.image for batch in self.batches for result in batch.failures]


def _log(message: str) -> None:
    print(f"==> {message}", flush=True)


def _expand_path(value: str, *, base: Path) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base / path).resolve()
    return path


def _string_list(value: object, *, key: str) -> list[str]:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if not isinstance(value, list):
        raise InstallError(f"{key} must be a list of strings")
    return [str(part) for part in value]


def parse_port_mappings(values: Iterable[str]) -> dict[str, str]:
    """Parse ``container=host`` pairs; each value may hold several comma separated pairs."""

    mappings: dict[str, str] = {}
    for value in values:
        for pair in value.split(","):
            pair = pair.strip()
            if not pair:
                continue
            container_port, sep, host_port = pair.partition("=")
            container_port, host_port = container_port.strip(), host_port.strip()
            if not sep or not container_port.isdigit() or not host_port.isdigit():
                raise InstallError(
                    f"Invalid port mapping '{pair}'; expected CONTAINER_PORT=HOST_PORT"
                )
            mappings[container_port] = host_port
    return mappings


def render_kind_config(port_mappings: Mapping[str, str]) -> str:
    template = _ENVIRONMENT.from_string(KIND_CONFIG_TEMPLATE)
    return template.render(port_mappings=sorted(port_mappings.items()))


def write_kind_config(path: Path, port_mappings: Mapping[str, str]) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_kind_config(port_mappings), encoding="utf-8")
    path.chmod(0o600)
    return path


def resolve_nightly_tag(token: str, *, today: date | None = None) -> tuple[str, str]:
    """Return ``(date, tag)`` for a nightly token, or ``("", "")`` when it cannot be resolved.

    ``latest`` means yesterday. Dates are accepted as ``2020-01-02`` or
    ``20200102``.
    """

    if not token:
        return "", ""
    if token == NIGHTLY_LATEST:
        target = (today or date.today()) - timedelta(days=1)
    else:
        for layout in NIGHTLY_DATE_LAYOUTS:
            try:
                target = datetime.strptime(token, layout).date()
            except ValueError:
                continue
            # strptime accepts unpadded fields; only exact layouts count.
            if target.strftime(layout) == token:
                break
        else:
            return "", ""
    compact = target.strftime("%Y%m%d")
    return compact, f"nightly-{compact}"


def manifest_urls(ks_version: str) -> list[str]:
    return [f"{MANIFEST_BASE_URL}/{ks_version}/{name}" for name in MANIFEST_FILES]


def build_create_command(options: InstallOptions, config_path: Path) -> list[str]:
    return [
        "kind",
        "create",
        "cluster",
        "--image",
        options.node_image,
        "--config",
        str(config_path),
        "--name",
        options.name,
    ]


def build_cluster_info_command(options: InstallOptions) -> list[str]:
    return ["kubectl", "cluster-info", "--context", options.context]


def build_apply_command(url: str) -> list[str]:
    return ["kubectl", "apply", "-f", url]


def build_reset_command(nightly_date: str) -> list[str]:
    return ["kubectl", "ks", "com", "reset", "--nightly", nightly_date, "-a"]


def load_install_config(path: Path) -> InstallProfile:
    """Load an install profile.

    Recognised tables are ``[cluster]``, ``[kubesphere]``, ``[sync]`` and
    ``[images]`` (with ``[images.components]``). Anything not set falls back
    to the built-in defaults.
    """

    if not path.exists():
        raise InstallError(f"Install profile not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise InstallError(f"Unable to read install profile {path}: {exc}") from exc
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise InstallError(f"Invalid install profile {path}: {exc}") from exc
    base_dir = path.parent

    options = InstallOptions()
    cluster = data.get("cluster", {})
    if not isinstance(cluster, dict):
        raise InstallError("[cluster] must be a table")
    options.name = str(cluster.get("name", options.name))
    options.kubernetes_version = str(cluster.get("kubernetes_version", options.kubernetes_version))
    raw_mappings = cluster.get("port_mappings", {})
    if not isinstance(raw_mappings, dict):
        raise InstallError("cluster.port_mappings must be a table of container = host ports")
    options.port_mappings = parse_port_mappings(
        f"{container}={host}" for container, host in raw_mappings.items()
    )
    if cluster.get("kind_config"):
        options.kind_config = _expand_path(str(cluster["kind_config"]), base=base_dir)

    kubesphere = data.get("kubesphere", {})
    if not isinstance(kubesphere, dict):
        raise InstallError("[kubesphere] must be a table")
    options.ks_version = str(kubesphere.get("version", options.ks_version))
    options.components = _string_list(kubesphere.get("components", []), key="kubesphere.components")
    options.reset = bool(kubesphere.get("reset", options.reset))
    options.nightly = str(kubesphere.get("nightly", options.nightly))

    sync = data.get("sync", {})
    if not isinstance(sync, dict):
        raise InstallError("[sync] must be a table")
    options.strict_sync = bool(sync.get("strict", options.strict_sync))

    catalog = ImageCatalog()
    images = data.get("images", {})
    if not isinstance(images, dict):
        raise InstallError("[images] must be a table")
    for key in ("kubesphere", "dependencies", "nightly"):
        if key in images:
            setattr(catalog, key, _string_list(images[key], key=f"images.{key}"))
    components = images.get("components", {})
    if not isinstance(components, dict):
        raise InstallError("images.components must be a table of image lists")
    for component, component_images in components.items():
        catalog.components[str(component)] = _string_list(
            component_images, key=f"images.components.{component}"
        )

    return InstallProfile(options=options, catalog=catalog)


class _Pipeline:
    def __init__(
        self,
        options: InstallOptions,
        catalog: ImageCatalog,
        execute: Executor,
        today: date | None,
    ):
        self.options = options
        self.catalog = catalog
        self.execute = execute
        self.today = today
        self.report = InstallReport()

    def step(self, description: str, command: Sequence[str]) -> None:
        try:
            self.execute(command)
        except SYNC_ERRORS as exc:
            raise InstallError(f"{description} failed: {exc}") from exc

    def sync(self, images: Sequence[str], label: str) -> BatchResult:
        batch = ParallelSyncBatch(
            images,
            cluster_name=self.options.name,
            execute=self.execute,
            label=label,
        ).run()
        self.report.batches.append(batch)
        if not batch.ok and self.options.strict_sync:
            raise InstallError(batch.summary())
        return batch

    def create_cluster(self) -> None:
        with tempfile.TemporaryDirectory(prefix="ks-kind-") as tmpdir:
            target = self.options.kind_config or Path(tmpdir) / KIND_CONFIG_NAME
            try:
                config_path = write_kind_config(target, self.options.port_mappings)
            except OSError as exc:
                raise InstallError(f"Unable to write kind configuration {target}: {exc}") from exc
            _log(f"Creating kind cluster {self.options.name} with {config_path}")
            self.step("Creating the kind cluster", build_create_command(self.options, config_path))

    def apply_manifests(self) -> None:
        for url in manifest_urls(self.options.ks_version):
            self.step(f"Applying {url}", build_apply_command(url))
        _log("Keep the installer from pulling preloaded images again with:")
        print(IMAGE_PULL_POLICY_HINT, flush=True)

    def sync_components(self) -> None:
        for component in self.options.components:
            images = self.catalog.component_images(component)
            if images is None:
                _log(f"No images to preload for component '{component}', skipping.")
                continue
            self.sync(images, f"{component} images")

    def reset(self) -> None:
        nightly_date, tag = resolve_nightly_tag(self.options.nightly, today=self.today)
        if not tag:
            _log(f"Skipping reset: no nightly tag for '{self.options.nightly}'.")
            return
        self.report.nightly_tag = tag
        self.sync(self.catalog.nightly_images(tag), f"{tag} images")
        self.step("Resetting KubeSphere components", build_reset_command(nightly_date))

    def run(self) -> InstallReport:
        self.create_cluster()
        self.step("Checking the kind cluster", build_cluster_info_command(self.options))
        self.sync(self.catalog.core_images(self.options.ks_version), "core images")
        self.apply_manifests()
        self.sync_components()
        if self.options.reset:
            self.reset()
        if self.report.failures:
            _log(
                "Some images were not preloaded and will be pulled by the cluster: "
                + ", ".join(self.report.failures)
            )
        return self.report


def run_install(
    options: InstallOptions,
    *,
    catalog: ImageCatalog | None = None,
    execute: Executor | None = None,
    today: date | None = None,
) -> InstallReport:
    """Create a kind cluster and install KubeSphere onto it.

    Cluster creation, the reachability check, manifest application and the
    reset command are fatal on failure. Image sync failures only abort the
    run when ``options.strict_sync`` is set.
    """

    def _run(command: Sequence[str]) -> runner.CommandResult:
        return runner.run_command(command, dry_run=options.dry_run).check()

    pipeline = _Pipeline(options, catalog or ImageCatalog(), execute or _run, today)
    return pipeline.run()


__all__ = [
    "DEFAULT_CLUSTER_NAME",
    "DEFAULT_KS_VERSION",
    "DEFAULT_KUBERNETES_VERSION",
    "ImageCatalog",
    "InstallError",
    "InstallOptions",
    "InstallProfile",
    "InstallReport",
    "build_apply_command",
    "build_cluster_info_command",
    "build_create_command",
    "build_reset_command",
    "load_install_config",
    "manifest_urls",
    "parse_port_mappings",
    "render_kind_config",
    "resolve_nightly_tag",
    "run_install",
    "write_kind_config",
]
