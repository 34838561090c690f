import dataclasses
import re
from typing import Optional
from errors import ConfigError

DEFAULT_REGISTRY = "docker.io"

_COMPONENT_RE = re.compile(r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*")
_TAG_RE = re.compile(r"[\w][\w.-]{0,127}")
_DIGEST_RE = re.compile(r"[a-z0-9]+(?:[.+_-][a-z0-9]+)*:[0-9a-fA-F]{32,}")


def _looks_like_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


@dataclasses.dataclass(frozen=True)
class ImageReference:
    """An image location: [registry/]repository[:tag][@digest]."""

    registry: Optional[str]
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    def __post_init__(self) -> None:
        if self.tag is None and self.digest is None:
            raise ConfigError(f"Image reference {self} has neither tag nor digest")

    @staticmethod
    def parse(ref: str) -> 'ImageReference':
        ref = ref.strip()
        if not ref:
            raise ConfigError("Empty image reference")

        name, digest = ref, None
        if "@" in ref:
            name, digest = ref.split("@", 1)
            if not _DIGEST_RE.fullmatch(digest):
                raise ConfigError(f"Invalid digest in image reference {ref!r}")

        tag = None
        last_slash = name.rfind("/")
        colon = name.rfind(":")
        if colon > last_slash:
            name, tag = name[:colon], name[colon + 1 :]
            if not _TAG_RE.fullmatch(tag):
                raise ConfigError(f"Invalid tag in image reference {ref!r}")

        registry = None
        components = name.split("/")
        if len(components) > 1 and _looks_like_registry(components[0]):
            registry = components[0]
            components = components[1:]

        if not all(_COMPONENT_RE.fullmatch(c) for c in components):
            raise ConfigError(f"Invalid repository path in image reference {ref!r}")

        if tag is None and digest is None:
            raise ConfigError(f"Image reference {ref!r} has neither tag nor digest")

        return ImageReference(registry, "/".join(components), tag, digest)

    def domain(self) -> str:
        return self.registry or DEFAULT_REGISTRY

    def name(self) -> str:
        if self.registry is None:
            return self.repository
        return f"{self.registry}/{self.repository}"

    def in_registry(self, registry: str, namespace: str = "") -> 'ImageReference':
        """Place this reference under another registry, keeping the last path component and tag."""
        base = self.repository.rsplit("/", 1)[-1]
        repository = f"{namespace.strip('/')}/{base}" if namespace else base
        return ImageReference(registry, repository, self.tag, self.digest)

    def __str__(self) -> str:
        s = self.name()
        if self.tag is not None:
            s += f":{self.tag}"
        if self.digest is not None:
            s += f"@{self.digest}"
        return s
