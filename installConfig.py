import os
from typing import Optional
from pydantic import Field, field_validator, model_validator
import configLoader
import timer

RESERVED_COMMANDS = ("all", "status")


def _duration(value: str) -> str:
    timer.str_to_duration_float(value)
    return value


class StorageClassConfig(configLoader.StrictBaseModel):
    name: str
    manifest: str


class HelmRepoConfig(configLoader.StrictBaseModel):
    name: str
    url: str


class BuildConfig(configLoader.StrictBaseModel):
    # Directory the image is built from, relative to the config file
    context: str
    tag: str
    dockerfile: Optional[str] = None
    # Load the built image into this kind cluster
    kind_cluster: Optional[str] = None
    # Replaces `docker build` (e.g. ["make", "deploy-gcp-demo"]), run in `context`
    command: Optional[list[str]] = None


class ComponentConfig(configLoader.StrictBaseModel):
    name: str
    release: str
    chart: str
    values: Optional[str] = None
    description: str = ""
    timeout: Optional[str] = None
    # Label selector of the pods to wait for and count in the status
    selector: Optional[str] = None
    needs_storage: bool = False
    # Uninstall an existing release first instead of skipping it
    reinstall: bool = False
    build: Optional[BuildConfig] = None

    @field_validator("timeout")
    @classmethod
    def check_timeout(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _duration(v)

    def label(self) -> str:
        return self.description or self.name


class PathCheckConfig(configLoader.StrictBaseModel):
    path: str
    description: str = ""


class EndpointConfig(configLoader.StrictBaseModel):
    gateway: str
    namespace: Optional[str] = None
    domains: list[str] = Field(min_length=1)
    paths: list[PathCheckConfig] = [PathCheckConfig(path="/")]
    timeout: str = "10s"
    expected_status: list[int] = [200, 204]

    @field_validator("timeout")
    @classmethod
    def check_timeout(cls, v: str) -> str:
        return _duration(v)


class InstallConfig(configLoader.StrictBaseModel):
    namespace: str
    # kubectl context the stack must be installed into, checked before anything is done
    context: Optional[str] = None
    kubeconfig: Optional[str] = None
    base_dir: str = "."
    wait_timeout: str = "5m"
    storage_class: Optional[StorageClassConfig] = None
    repositories: list[HelmRepoConfig] = []
    components: list[ComponentConfig] = Field(min_length=1)
    endpoints: Optional[EndpointConfig] = None

    @field_validator("wait_timeout")
    @classmethod
    def check_wait_timeout(cls, v: str) -> str:
        return _duration(v)

    @model_validator(mode="after")
    def check_components(self) -> 'InstallConfig':
        names = [c.name for c in self.components]
        for name in names:
            if name in RESERVED_COMMANDS:
                raise ValueError(f"Component name '{name}' is reserved")
            if names.count(name) > 1:
                raise ValueError(f"Component '{name}' is defined more than once")
        if any(c.needs_storage for c in self.components) and self.storage_class is None:
            raise ValueError("A component needs storage but no storage_class is configured")
        return self

    def component(self, name: str) -> ComponentConfig:
        for c in self.components:
            if c.name == name:
                return c
        raise KeyError(name)


def load(path: str) -> InstallConfig:
    cfg = configLoader.load(path, InstallConfig)
    base_dir = os.path.normpath(os.path.join(os.path.dirname(os.path.abspath(path)), cfg.base_dir))
    return cfg.model_copy(update={"base_dir": base_dir})
