import dataclasses
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional
import host
from errors import AuthenticationError, ConfigError, NotFoundError, ToolUnavailableError, TransferError
from imageRef import ImageReference
from logger import logger
from mirrorConfig import Credentials, TimeoutConfig

INDEX_MEDIA_TYPES = (
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
)


@dataclasses.dataclass(frozen=True)
class Session:
    """An authenticated registry login, shared read-only by all tasks of a run."""

    registry: str
    username: str


@dataclasses.dataclass(frozen=True)
class LocalImage:
    ref: ImageReference


@dataclasses.dataclass(frozen=True)
class Platform:
    os: str
    architecture: str
    variant: Optional[str] = None

    def __str__(self) -> str:
        s = f"{self.os}/{self.architecture}"
        if self.variant:
            s += f"/{self.variant}"
        return s


@dataclasses.dataclass(frozen=True)
class Manifest:
    media_type: str
    platforms: tuple[Platform, ...] = ()

    def is_index(self) -> bool:
        return self.media_type in INDEX_MEDIA_TYPES

    @staticmethod
    def from_json(raw: str) -> 'Manifest':
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise ValueError(f"manifest is not valid json: {e}")
        if not isinstance(data, dict):
            raise ValueError("manifest is not a json object")

        media_type = str(data.get("mediaType", ""))
        manifests = data.get("manifests")
        if not media_type and isinstance(manifests, list):
            media_type = INDEX_MEDIA_TYPES[0]

        platforms: list[Platform] = []
        if isinstance(manifests, list):
            for m in manifests:
                p: Any = m.get("platform") if isinstance(m, dict) else None
                if not isinstance(p, dict):
                    continue
                # Attestation manifests are listed as unknown/unknown
                if p.get("os") == "unknown" or p.get("architecture") == "unknown":
                    continue
                platforms.append(Platform(str(p.get("os", "")), str(p.get("architecture", "")), p.get("variant")))
        return Manifest(media_type, tuple(platforms))


class RegistryClient(ABC):
    @abstractmethod
    def login(self, credentials: Credentials) -> Session:
        """Authenticate against the registry, raising AuthenticationError when rejected."""
        pass

    @abstractmethod
    def copy_manifest(self, src: ImageReference, dst: ImageReference, session: Session) -> None:
        """Make dst reference the same manifest (list) as src, registry to registry."""
        pass

    @abstractmethod
    def pull(self, src: ImageReference, session: Session) -> LocalImage:
        pass

    @abstractmethod
    def tag(self, local: LocalImage, dst: ImageReference) -> None:
        pass

    @abstractmethod
    def push(self, dst: ImageReference, session: Session) -> None:
        pass

    @abstractmethod
    def inspect(self, ref: ImageReference, session: Session) -> Manifest:
        """Raise NotFoundError when ref can't be retrieved."""
        pass


class DockerRegistryClient(RegistryClient):
    def __init__(self, h: host.Host, timeouts: Optional[TimeoutConfig] = None):
        self.host = h
        self.timeouts = timeouts or TimeoutConfig()
        self._buildx: Optional[bool] = None

    def _docker(self, args: list[str], op: str, *, input: Optional[str] = None, log_level: int = logging.DEBUG) -> host.Result:
        return self.host.run(["docker", *args], log_level, input=input, timeout=self.timeouts.seconds(op))

    def check_tools(self) -> bool:
        """Fail if docker is missing, return whether buildx (manifest copies) is usable."""
        if not self.host.which("docker"):
            raise ConfigError(f"docker not found on {self.host.hostname()}")
        return self.buildx_available()

    def buildx_available(self) -> bool:
        if self._buildx is None:
            self._buildx = self.host.run(["docker", "buildx", "version"]).success()
            if not self._buildx:
                logger.warning("docker buildx not available, manifest copies will fall back to pull/tag/push")
        return self._buildx

    def builder_exists(self, name: str) -> bool:
        return self.host.run(["docker", "buildx", "inspect", name]).success()

    def ensure_builder(self, name: str) -> None:
        if self.builder_exists(name):
            logger.info(f"Using existing buildx builder {name}")
            ret = self.host.run(["docker", "buildx", "use", name])
        else:
            logger.info(f"Creating buildx builder {name}")
            ret = self.host.run(["docker", "buildx", "create", "--name", name, "--driver", "docker-container", "--use"])
            if ret.success():
                ret = self.host.run(["docker", "buildx", "inspect", "--bootstrap", name])
        if not ret.success():
            logger.warning(f"Could not set up buildx builder {name}: {ret}")

    def login(self, credentials: Credentials) -> Session:
        logger.info(f"Logging into {credentials.registry} as {credentials.username}")
        ret = self._docker(["login", credentials.registry, "-u", credentials.username, "--password-stdin"], "login", input=credentials.token)
        if not ret.success():
            raise AuthenticationError(credentials.registry, ret.err.strip())
        return Session(credentials.registry, credentials.username)

    def copy_manifest(self, src: ImageReference, dst: ImageReference, session: Session) -> None:
        if not self.buildx_available():
            raise ToolUnavailableError(str(dst), "docker buildx imagetools is not available")
        ret = self._docker(["buildx", "imagetools", "create", "--tag", str(dst), str(src)], "copy")
        if not ret.success():
            raise TransferError(str(dst), f"imagetools create from {src} failed {ret}")

    def pull(self, src: ImageReference, session: Session) -> LocalImage:
        ret = self._docker(["pull", str(src)], "pull")
        if not ret.success():
            raise TransferError(str(src), f"pull failed {ret}")
        return LocalImage(src)

    def tag(self, local: LocalImage, dst: ImageReference) -> None:
        ret = self.host.run(["docker", "tag", str(local.ref), str(dst)])
        if not ret.success():
            raise TransferError(str(dst), f"tag from {local.ref} failed {ret}")

    def push(self, dst: ImageReference, session: Session) -> None:
        ret = self._docker(["push", str(dst)], "push")
        if not ret.success():
            raise TransferError(str(dst), f"push failed {ret}")

    def inspect(self, ref: ImageReference, session: Session) -> Manifest:
        if not self.buildx_available():
            raise ToolUnavailableError(str(ref), "docker buildx imagetools is not available")
        ret = self._docker(["buildx", "imagetools", "inspect", "--raw", str(ref)], "inspect")
        if not ret.success():
            raise NotFoundError(str(ref), ret.err.strip())
        try:
            return Manifest.from_json(ret.out)
        except ValueError as e:
            raise NotFoundError(str(ref), str(e))
