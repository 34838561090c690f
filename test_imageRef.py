import pytest

from errors import ConfigError
from imageRef import ImageReference


def test_parse() -> None:
    ref = ImageReference.parse("quay.io/prometheus/node-exporter:v1.8.2")
    assert ref.registry == "quay.io"
    assert ref.repository == "prometheus/node-exporter"
    assert ref.tag == "v1.8.2"
    assert ref.digest is None
    assert str(ref) == "quay.io/prometheus/node-exporter:v1.8.2"

    ref = ImageReference.parse("nginx:1.27")
    assert ref.registry is None
    assert ref.domain() == "docker.io"
    assert ref.name() == "nginx"
    assert str(ref) == "nginx:1.27"

    ref = ImageReference.parse("localhost:5000/team/app:dev")
    assert ref.registry == "localhost:5000"
    assert ref.repository == "team/app"
    assert ref.tag == "dev"

    ref = ImageReference.parse("localhost/app:dev")
    assert ref.registry == "localhost"

    # No registry component: "library" is part of the repository
    ref = ImageReference.parse("library/redis:7")
    assert ref.registry is None
    assert ref.repository == "library/redis"


def test_parse_digest() -> None:
    digest = "sha256:" + "a" * 64
    ref = ImageReference.parse(f"ghcr.io/org/tool@{digest}")
    assert ref.tag is None
    assert ref.digest == digest
    assert str(ref) == f"ghcr.io/org/tool@{digest}"

    ref = ImageReference.parse(f"ghcr.io/org/tool:1.0@{digest}")
    assert ref.tag == "1.0"
    assert ref.digest == digest


@pytest.mark.parametrize(
    "bad",
    [
        "",
        "nginx",
        "ghcr.io/org/tool",
        "Upper/case:1",
        "ghcr.io/org/tool:bad tag",
        "ghcr.io/org/tool@sha256:xyz",
        "ghcr.io//tool:1",
    ],
)
def test_parse_invalid(bad: str) -> None:
    with pytest.raises(ConfigError):
        ImageReference.parse(bad)


def test_needs_tag_or_digest() -> None:
    with pytest.raises(ConfigError):
        ImageReference("ghcr.io", "org/tool")


def test_in_registry() -> None:
    src = ImageReference.parse("docker.io/bitnami/postgresql:16.4.0")
    dst = src.in_registry("ghcr.io", "acme")
    assert str(dst) == "ghcr.io/acme/postgresql:16.4.0"
    assert str(src.in_registry("ghcr.io")) == "ghcr.io/postgresql:16.4.0"
    assert str(src.in_registry("ghcr.io", "/acme/")) == "ghcr.io/acme/postgresql:16.4.0"
