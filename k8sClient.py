import kubernetes
import logging
import os
import yaml
from typing import Any, Optional
import host
import timer
from errors import ClusterError
from logger import logger

GATEWAY_GROUP = "gateway.networking.k8s.io"
GATEWAY_VERSION = "v1"


def default_kubeconfig() -> str:
    return os.environ.get("KUBECONFIG", os.path.join(os.environ.get("HOME", "/root"), ".kube/config")).split(os.pathsep)[0]


class K8sClient:
    def __init__(self, kubeconfig: Optional[str] = None, context: Optional[str] = None, h: Optional[host.Host] = None):
        self._kc = kubeconfig or default_kubeconfig()
        self._context = context
        self._host = h or host.LocalHost()
        self._api_client: Optional[kubernetes.client.ApiClient] = None

    def _api(self) -> kubernetes.client.ApiClient:
        if self._api_client is None:
            try:
                with open(self._kc) as f:
                    c = yaml.safe_load(f)
                self._api_client = kubernetes.config.new_client_from_config_dict(c, context=self._context)
            except (OSError, yaml.YAMLError, kubernetes.config.ConfigException) as e:
                raise ClusterError(f"Cannot load kubeconfig {self._kc}: {e}")
        return self._api_client

    def _core(self) -> kubernetes.client.CoreV1Api:
        return kubernetes.client.CoreV1Api(self._api())

    def kubectl(self, args: list[str], *, timeout: Optional[float] = None, log_level: int = logging.DEBUG) -> host.Result:
        cmd = ["kubectl", *args, "--kubeconfig", self._kc]
        if self._context:
            cmd += ["--context", self._context]
        return self._host.run(cmd, log_level, timeout=timeout)

    def kubectl_or_raise(self, args: list[str], *, timeout: Optional[float] = None) -> host.Result:
        ret = self.kubectl(args, timeout=timeout, log_level=logging.INFO)
        if not ret.success():
            raise ClusterError(f"kubectl {' '.join(args)} failed {ret}")
        return ret

    def current_context(self) -> str:
        ret = self._host.run(["kubectl", "config", "current-context", "--kubeconfig", self._kc])
        if not ret.success():
            raise ClusterError(f"Cannot determine current kubectl context {ret}")
        return ret.out.strip()

    def _exists(self, read: Any, *args: Any) -> bool:
        try:
            read(*args)
            return True
        except kubernetes.client.exceptions.ApiException as e:
            if e.status == 404:
                return False
            raise ClusterError(f"API request failed: {e.status} {e.reason}")

    def namespace_exists(self, name: str) -> bool:
        return self._exists(self._core().read_namespace, name)

    def create_namespace(self, name: str) -> None:
        logger.info(f"Creating namespace '{name}'")
        body = kubernetes.client.V1Namespace(metadata=kubernetes.client.V1ObjectMeta(name=name))
        try:
            self._core().create_namespace(body)
        except kubernetes.client.exceptions.ApiException as e:
            raise ClusterError(f"Creating namespace {name} failed: {e.status} {e.reason}")

    def storage_class_exists(self, name: str) -> bool:
        return self._exists(kubernetes.client.StorageV1Api(self._api()).read_storage_class, name)

    def apply_manifest(self, path: str) -> None:
        if not os.path.exists(path):
            raise ClusterError(f"Manifest {path} not found")
        self.kubectl_or_raise(["apply", "-f", path])

    def wait_for_ready(self, selector: str, namespace: str, timeout: float) -> bool:
        logger.info(f"Waiting for pods {selector} in namespace {namespace} to be ready")
        sw = timer.StopWatch.started()
        ret = self.kubectl(
            ["wait", "--for=condition=ready", "pod", "-l", selector, "-n", namespace, f"--timeout={timer.to_go_duration(timeout)}"],
            timeout=timeout + 30,
        )
        if ret.success():
            logger.info(f"Pods {selector} in {namespace} ready after {sw}")
        else:
            logger.warning(f"Pods {selector} in {namespace} not ready after {sw}: {ret.err.strip()}")
        return ret.success()

    def count_pods(self, selector: str, namespace: str) -> int:
        try:
            pods = self._core().list_namespaced_pod(namespace, label_selector=selector)
        except kubernetes.client.exceptions.ApiException as e:
            raise ClusterError(f"Listing pods {selector} in {namespace} failed: {e.status} {e.reason}")
        return sum(1 for p in pods.items if p.status is not None and p.status.phase == "Running")

    def pod_table(self, namespace: str) -> str:
        ret = self.kubectl(["get", "pods", "-n", namespace])
        return ret.out if ret.success() else ""

    def gateway_address(self, name: str, namespace: str) -> Optional[str]:
        api = kubernetes.client.CustomObjectsApi(self._api())
        try:
            gw = api.get_namespaced_custom_object(GATEWAY_GROUP, GATEWAY_VERSION, namespace, "gateways", name)
        except kubernetes.client.exceptions.ApiException as e:
            if e.status == 404:
                return None
            raise ClusterError(f"API request failed: {e.status} {e.reason}")
        addresses = gw.get("status", {}).get("addresses") or []
        if not addresses:
            return None
        return str(addresses[0].get("value")) or None
