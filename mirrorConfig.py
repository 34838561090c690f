import dataclasses
import os
from typing import Literal, Optional
from pydantic import Field, field_validator, model_validator
import configLoader
import timer
from errors import ConfigError
from imageRef import ImageReference


def _duration(value: str) -> str:
    timer.str_to_duration_float(value)
    return value


class VerifyConfig(configLoader.StrictBaseModel):
    max_attempts: int = Field(default=3, ge=1)
    # Fixed delay between attempts
    backoff: str = "2s"
    # "pull" fetches the image like the old mirror scripts did, "inspect" only reads the manifest
    method: Literal["pull", "inspect"] = "pull"

    @field_validator("backoff")
    @classmethod
    def check_backoff(cls, v: str) -> str:
        return _duration(v)

    def backoff_seconds(self) -> float:
        return timer.str_to_duration_float(self.backoff)


class TimeoutConfig(configLoader.StrictBaseModel):
    login: str = "1m"
    copy_: str = Field(default="10m", alias="copy")
    pull: str = "10m"
    push: str = "10m"
    inspect: str = "1m"

    @field_validator("login", "copy_", "pull", "push", "inspect")
    @classmethod
    def check_durations(cls, v: str) -> str:
        return _duration(v)

    def seconds(self, op: str) -> float:
        return timer.str_to_duration_float(getattr(self, "copy_" if op == "copy" else op))


class ImagePair(configLoader.StrictBaseModel):
    source: str
    # Relative destinations are placed under <registry>/<owner>, a missing
    # one reuses the last path component and tag of the source.
    destination: Optional[str] = None

    @field_validator("source", "destination")
    @classmethod
    def valid_reference(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            ImageReference.parse(v)
        except ConfigError as e:
            raise ValueError(str(e))
        return v


@dataclasses.dataclass(frozen=True)
class MirrorTask:
    source: ImageReference
    destination: ImageReference

    def __str__(self) -> str:
        return f"{self.source} -> {self.destination}"


@dataclasses.dataclass(frozen=True)
class Credentials:
    registry: str
    username: str
    token: str = dataclasses.field(repr=False)

    def __repr__(self) -> str:
        return f"Credentials(registry={self.registry!r}, username={self.username!r}, token=<redacted>)"

    @staticmethod
    def from_env(registry: str, username: str, token_env: str) -> 'Credentials':
        token = os.environ.get(token_env, "")
        if not token.strip():
            raise ConfigError(f"{token_env} must be exported with a token for {username}@{registry}")
        if not username:
            raise ConfigError(f"No username configured for {registry}")
        return Credentials(registry, username, token.strip())


class MirrorConfig(configLoader.StrictBaseModel):
    registry: str
    owner: str
    username: Optional[str] = None
    token_env: str = "GHCR_PAT"
    images: list[ImagePair] = Field(min_length=1)
    verify: VerifyConfig = VerifyConfig()
    timeouts: TimeoutConfig = TimeoutConfig()
    parallel: int = Field(default=1, ge=1)
    buildx_builder: Optional[str] = "multiarch-mirror-builder"
    # Treat a missing `docker buildx` as a configuration error instead of
    # silently mirroring only the local platform.
    require_manifest_copy: bool = False
    # Images `validate` expects besides the mirrored ones, e.g. pushed by another job
    also_expect: list[str] = []

    @field_validator("also_expect")
    @classmethod
    def valid_expected(cls, v: list[str]) -> list[str]:
        for ref in v:
            try:
                ImageReference.parse(ref)
            except ConfigError as e:
                raise ValueError(str(e))
        return v

    @model_validator(mode="after")
    def check_tasks(self) -> 'MirrorConfig':
        seen: set[str] = set()
        for task in self.tasks():
            if task.destination.registry != self.registry:
                raise ValueError(f"Destination {task.destination} is not in registry {self.registry}")
            dst = str(task.destination)
            if dst in seen:
                raise ValueError(f"Destination {dst} is used by more than one image")
            seen.add(dst)
        return self

    def namespace(self) -> str:
        return f"{self.registry}/{self.owner}"

    def login_user(self) -> str:
        return self.username or self.owner

    def destination_for(self, pair: ImagePair) -> ImageReference:
        src = ImageReference.parse(pair.source)
        if pair.destination is None:
            return src.in_registry(self.registry, self.owner)
        return self._absolute(ImageReference.parse(pair.destination))

    def _absolute(self, dst: ImageReference) -> ImageReference:
        if dst.registry is None:
            return dataclasses.replace(dst, registry=self.registry, repository=f"{self.owner}/{dst.repository}")
        return dst

    def expected_destinations(self) -> list[ImageReference]:
        refs = [t.destination for t in self.tasks()]
        return refs + [self._absolute(ImageReference.parse(r)) for r in self.also_expect]

    def tasks(self) -> list[MirrorTask]:
        return [MirrorTask(ImageReference.parse(p.source), self.destination_for(p)) for p in self.images]

    def credentials(self) -> Credentials:
        return Credentials.from_env(self.registry, self.login_user(), self.token_env)


def load(path: str) -> MirrorConfig:
    return configLoader.load(path, MirrorConfig)
