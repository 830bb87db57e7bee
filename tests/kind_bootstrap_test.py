from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from ks_toolkit.kind_cluster import bootstrap

TODAY = date(2020, 1, 3)


def _create(command: list[str]) -> bool:
    return command[:3] == ["kind", "create", "cluster"]


def test_render_kind_config_sorts_port_mappings() -> None:
    rendered = bootstrap.render_kind_config({"30880": "30880", "30180": "8080"})

    assert rendered.startswith("kind: Cluster\napiVersion: kind.x-k8s.io/v1alpha4\n")
    assert 'node-labels: "ingress-ready=true"' in rendered
    assert rendered.endswith(
        "  extraPortMappings:\n"
        "  - containerPort: 30180\n"
        "    hostPort: 8080\n"
        "    protocol: TCP\n"
        "  - containerPort: 30880\n"
        "    hostPort: 30880\n"
        "    protocol: TCP\n"
    )


def test_render_kind_config_without_port_mappings() -> None:
    rendered = bootstrap.render_kind_config({})

    assert rendered.endswith("  extraPortMappings: []\n")
    assert "containerPort" not in rendered


def test_parse_port_mappings_accepts_repeated_and_comma_separated_pairs() -> None:
    mappings = bootstrap.parse_port_mappings(["30880=30880,30180=30180", " 80 = 8080 "])

    assert mappings == {"30880": "30880", "30180": "30180", "80": "8080"}


@pytest.mark.parametrize("value", ["30880", "30880=", "http=80", "80=eighty"])
def test_parse_port_mappings_rejects_malformed_pairs(value: str) -> None:
    with pytest.raises(bootstrap.InstallError):
        bootstrap.parse_port_mappings([value])


@pytest.mark.parametrize(
    ("token", "expected"),
    [
        ("latest", ("20200102", "nightly-20200102")),
        ("2020-01-02", ("20200102", "nightly-20200102")),
        ("20200102", ("20200102", "nightly-20200102")),
        ("not-a-date", ("", "")),
        ("2020-1-2", ("", "")),
        ("", ("", "")),
    ],
)
def test_resolve_nightly_tag(token: str, expected: tuple[str, str]) -> None:
    assert bootstrap.resolve_nightly_tag(token, today=TODAY) == expected


def test_resolve_latest_nightly_defaults_to_yesterday() -> None:
    compact, tag = bootstrap.resolve_nightly_tag("latest")

    expected = date.fromordinal(date.today().toordinal() - 1).strftime("%Y%m%d")
    assert compact == expected
    assert tag == f"nightly-{expected}"


def test_manifest_urls_follow_the_release_layout() -> None:
    assert bootstrap.manifest_urls("v3.0.0") == [
        "https://github.com/kubesphere/ks-installer/releases/download/v3.0.0/"
        "kubesphere-installer.yaml",
        "https://github.com/kubesphere/ks-installer/releases/download/v3.0.0/"
        "cluster-configuration.yaml",
    ]


def test_run_install_sequences_every_step(recorder) -> None:
    options = bootstrap.InstallOptions(name="dev", kubernetes_version="v1.19.1")

    report = bootstrap.run_install(options, execute=recorder, today=TODAY)

    create = recorder.commands[0]
    assert create[:5] == ["kind", "create", "cluster", "--image", "kindest/node:v1.19.1"]
    assert create[-2:] == ["--name", "dev"]
    assert recorder.commands[1] == ["kubectl", "cluster-info", "--context", "kind-dev"]

    pulls = {command[-1] for command in recorder.matching("docker", "pull")}
    assert pulls == set(bootstrap.ImageCatalog().core_images("v3.0.0"))

    apply_installer = recorder.index(["kubectl", "apply"])
    assert all(
        position < apply_installer
        for position, command in enumerate(recorder.commands)
        if command[0] in {"docker", "kind"} and command[1] != "create"
    )
    applies = recorder.matching("kubectl", "apply")
    assert [command[-1].rsplit("/", 1)[-1] for command in applies] == [
        "kubesphere-installer.yaml",
        "cluster-configuration.yaml",
    ]
    assert report.failures == []
    assert [batch.label for batch in report.batches] == ["core images"]


def test_run_install_aborts_before_syncing_when_create_fails(recorder) -> None:
    recorder.fail_when(_create)

    with pytest.raises(bootstrap.InstallError) as excinfo:
        bootstrap.run_install(bootstrap.InstallOptions(), execute=recorder)

    assert "Creating the kind cluster failed" in str(excinfo.value)
    assert recorder.matching("docker") == []
    assert recorder.matching("kind", "load") == []
    assert recorder.matching("kubectl") == []


def test_run_install_aborts_when_cluster_is_unreachable(recorder) -> None:
    recorder.fail_when(lambda command: command[:2] == ["kubectl", "cluster-info"])

    with pytest.raises(bootstrap.InstallError):
        bootstrap.run_install(bootstrap.InstallOptions(), execute=recorder)

    assert recorder.matching("docker") == []


def test_run_install_applies_manifests_despite_sync_failures(recorder) -> None:
    recorder.fail_when(lambda command: command == ["docker", "pull", "redis:5.0.5-alpine"])
    recorder.fail_when(lambda command: command[:2] == ["kind", "load"] and "mysql" in command[3])

    report = bootstrap.run_install(bootstrap.InstallOptions(), execute=recorder)

    applies = recorder.matching("kubectl", "apply")
    assert len(applies) == 2
    assert applies[0][-1].endswith("kubesphere-installer.yaml")
    assert applies[1][-1].endswith("cluster-configuration.yaml")
    assert sorted(report.failures) == ["mysql:8.0.11", "redis:5.0.5-alpine"]


def test_strict_sync_aborts_after_the_failed_batch(recorder) -> None:
    recorder.fail_when(lambda command: command == ["docker", "pull", "mysql:8.0.11"])
    options = bootstrap.InstallOptions(strict_sync=True)

    with pytest.raises(bootstrap.InstallError) as excinfo:
        bootstrap.run_install(options, execute=recorder)

    assert "mysql:8.0.11" in str(excinfo.value)
    # The batch still joined: every other core image was staged.
    assert len(recorder.matching("kind", "load")) == len(
        bootstrap.ImageCatalog().core_images("v3.0.0")
    ) - 1
    assert recorder.matching("kubectl", "apply") == []


def test_manifest_failures_are_fatal(recorder) -> None:
    recorder.fail_when(lambda command: command[-1].endswith("kubesphere-installer.yaml"))

    with pytest.raises(bootstrap.InstallError):
        bootstrap.run_install(bootstrap.InstallOptions(), execute=recorder)

    assert len(recorder.matching("kubectl", "apply")) == 1


def test_run_install_preloads_selected_component_images(recorder, capsys) -> None:
    options = bootstrap.InstallOptions(components=["devops", "logging"])

    report = bootstrap.run_install(options, execute=recorder)

    devops_images = bootstrap.ImageCatalog().components["devops"]
    pulls = [command[-1] for command in recorder.matching("docker", "pull")]
    assert set(devops_images) <= set(pulls)
    last_apply = max(
        position
        for position, command in enumerate(recorder.commands)
        if command[:2] == ["kubectl", "apply"]
    )
    first_devops = min(
        position
        for position, command in enumerate(recorder.commands)
        if command[:2] == ["docker", "pull"] and command[-1] in devops_images
    )
    assert last_apply < first_devops
    assert [batch.label for batch in report.batches] == ["core images", "devops images"]
    assert "No images to preload for component 'logging'" in capsys.readouterr().out


def test_reset_with_unresolvable_nightly_is_skipped(recorder, capsys) -> None:
    options = bootstrap.InstallOptions(reset=True, nightly="not-a-date")

    report = bootstrap.run_install(options, execute=recorder)

    assert report.nightly_tag == ""
    assert recorder.matching("kubectl", "ks") == []
    assert not any("kubespheredev" in command[-1] for command in recorder.matching("docker"))
    assert "Skipping reset" in capsys.readouterr().out


def test_reset_syncs_nightly_images_before_resetting(recorder) -> None:
    options = bootstrap.InstallOptions(reset=True, nightly="latest")

    report = bootstrap.run_install(options, execute=recorder, today=TODAY)

    assert report.nightly_tag == "nightly-20200102"
    reset = recorder.index(["kubectl", "ks", "com", "reset"])
    assert recorder.commands[reset] == [
        "kubectl",
        "ks",
        "com",
        "reset",
        "--nightly",
        "20200102",
        "-a",
    ]
    nightly_loads = [
        position
        for position, command in enumerate(recorder.commands)
        if command[:2] == ["kind", "load"] and command[3].endswith(":nightly-20200102")
    ]
    assert len(nightly_loads) == 4
    assert max(nightly_loads) < reset


def test_reset_flag_is_required_for_nightly(recorder) -> None:
    bootstrap.run_install(bootstrap.InstallOptions(nightly="latest"), execute=recorder)

    assert recorder.matching("kubectl", "ks") == []


def test_kind_config_is_kept_when_a_path_is_given(recorder, tmp_path: Path) -> None:
    target = tmp_path / "kind" / "config.yaml"
    options = bootstrap.InstallOptions(port_mappings={"30880": "30880"}, kind_config=target)

    bootstrap.run_install(options, execute=recorder)

    assert "containerPort: 30880" in target.read_text()
    create = recorder.commands[0]
    assert create[create.index("--config") + 1] == str(target)


def test_dry_run_prints_commands_without_running_them(capsys) -> None:
    options = bootstrap.InstallOptions(name="preview", dry_run=True, components=["devops"])

    report = bootstrap.run_install(options)

    out = capsys.readouterr().out
    assert "$ kind create cluster --image kindest/node:v1.18.2" in out
    assert "$ kubectl cluster-info --context kind-preview" in out
    assert "$ docker pull kubesphere/ks-console:v3.0.0" in out
    assert "$ kind load docker-image jenkins/jenkins:2.176.2 --name preview" in out
    assert "imagePullPolicy" in out
    assert report.failures == []


def test_load_install_config_reads_profile(tmp_path: Path) -> None:
    profile_path = tmp_path / "profile.toml"
    profile_path.write_text(
        """
[cluster]
name = "ks-dev"
kubernetes_version = "v1.19.1"
kind_config = "./rendered/kind.yaml"

[cluster.port_mappings]
30880 = 30880
30180 = "8080"

[kubesphere]
version = "v3.0.1"
components = ["devops"]
reset = true
nightly = "2020-01-02"

[sync]
strict = true

[images]
dependencies = ["redis:6"]

[images.components]
logging = ["elastic/elasticsearch:7"]
""",
        encoding="utf-8",
    )

    profile = bootstrap.load_install_config(profile_path)

    options = profile.options
    assert options.name == "ks-dev"
    assert options.kubernetes_version == "v1.19.1"
    assert options.kind_config == (tmp_path / "rendered" / "kind.yaml").resolve()
    assert options.port_mappings == {"30880": "30880", "30180": "8080"}
    assert options.ks_version == "v3.0.1"
    assert options.components == ["devops"]
    assert options.reset is True
    assert options.nightly == "2020-01-02"
    assert options.strict_sync is True
    assert profile.catalog.core_images("v3.0.1")[-1] == "redis:6"
    assert profile.catalog.components["logging"] == ["elastic/elasticsearch:7"]
    assert "devops" in profile.catalog.components


def test_load_install_config_reports_missing_files(tmp_path: Path) -> None:
    with pytest.raises(bootstrap.InstallError):
        bootstrap.load_install_config(tmp_path / "missing.toml")


def test_load_install_config_reports_unreadable_profiles(tmp_path: Path) -> None:
    profile_path = tmp_path / "profile.toml"
    profile_path.mkdir()

    with pytest.raises(bootstrap.InstallError, match="Unable to read install profile"):
        bootstrap.load_install_config(profile_path)


def test_load_install_config_rejects_invalid_toml(tmp_path: Path) -> None:
    profile_path = tmp_path / "broken.toml"
    profile_path.write_text("[cluster\nname = 1\n", encoding="utf-8")

    with pytest.raises(bootstrap.InstallError):
        bootstrap.load_install_config(profile_path)
