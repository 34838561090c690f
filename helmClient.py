import json
import logging
from typing import Any, Optional
import host
import timer
from errors import ClusterError
from logger import logger


class HelmClient:
    def __init__(self, h: host.Host, *, kube_context: Optional[str] = None, kubeconfig: Optional[str] = None):
        self._host = h
        self._kube_context = kube_context
        self._kubeconfig = kubeconfig

    def _global_args(self) -> list[str]:
        args = []
        if self._kube_context:
            args += ["--kube-context", self._kube_context]
        if self._kubeconfig:
            args += ["--kubeconfig", self._kubeconfig]
        return args

    def helm(self, args: list[str], *, timeout: Optional[float] = None, log_level: int = logging.DEBUG) -> host.Result:
        return self._host.run(["helm", *args, *self._global_args()], log_level, timeout=timeout)

    def helm_or_raise(self, args: list[str], *, timeout: Optional[float] = None) -> host.Result:
        ret = self.helm(args, timeout=timeout, log_level=logging.INFO)
        if not ret.success():
            raise ClusterError(f"helm {' '.join(args)} failed {ret}")
        return ret

    def _json(self, args: list[str]) -> list[dict[str, Any]]:
        ret = self.helm([*args, "-o", "json"])
        if not ret.success():
            # `helm repo list` exits non-zero when no repository is configured
            if "no repositories" in ret.err:
                return []
            raise ClusterError(f"helm {' '.join(args)} failed {ret}")
        try:
            data = json.loads(ret.out or "[]")
        except ValueError:
            data = None
        if not isinstance(data, list):
            raise ClusterError(f"Unexpected output of helm {' '.join(args)}: {ret.out}")
        return [e for e in data if isinstance(e, dict)]

    def repo_list(self) -> list[str]:
        return [str(e.get("name")) for e in self._json(["repo", "list"])]

    def repo_exists(self, name: str) -> bool:
        return name in self.repo_list()

    def repo_add(self, name: str, url: str) -> None:
        logger.info(f"Adding {name} helm repo")
        self.helm_or_raise(["repo", "add", name, url])

    def repo_update(self) -> None:
        self.helm_or_raise(["repo", "update"])

    def list_releases(self, namespace: str) -> list[str]:
        return [str(e.get("name")) for e in self._json(["list", "-n", namespace])]

    def release_exists(self, release: str, namespace: str) -> bool:
        return release in self.list_releases(namespace)

    def install_or_upgrade(self, release: str, chart: str, namespace: str, *, values: Optional[str] = None, timeout: Optional[float] = None) -> None:
        args = ["upgrade", "--install", release, chart, "-n", namespace]
        if values is not None:
            args += ["-f", values]
        helm_timeout = None
        if timeout is not None:
            args += ["--timeout", timer.to_go_duration(timeout)]
            # leave helm room to report its own timeout
            helm_timeout = timeout + 60
        self.helm_or_raise(args, timeout=helm_timeout)

    def uninstall(self, release: str, namespace: str) -> None:
        self.helm_or_raise(["uninstall", release, "-n", namespace])
