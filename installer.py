import dataclasses
import os
from typing import Callable, Optional
import host
import timer
from errors import ClusterError
from helmClient import HelmClient
from installConfig import ComponentConfig, InstallConfig
from k8sClient import K8sClient
from logger import logger


@dataclasses.dataclass(frozen=True)
class ComponentStatus:
    name: str
    installed: bool
    running_pods: int = 0


@dataclasses.dataclass(frozen=True)
class StackStatus:
    namespace_exists: bool
    storage_class_exists: Optional[bool]
    components: tuple[ComponentStatus, ...] = ()


class Installer:
    """Idempotent installs of the stack described by an InstallConfig.

    Every step checks whether its resource already exists before acting.
    """

    def __init__(self, cfg: InstallConfig, helm: HelmClient, k8s: K8sClient, h: Optional[host.Host] = None):
        self.cfg = cfg
        self.helm = helm
        self.k8s = k8s
        self.host = h or host.LocalHost()
        self._commands: dict[str, Callable[[], None]] = {c.name: self._installer_for(c) for c in cfg.components}
        self._commands["all"] = self.install_all
        self._commands["status"] = self.report_status

    def _installer_for(self, c: ComponentConfig) -> Callable[[], None]:
        return lambda: self.install_component(c)

    def _path(self, p: str) -> str:
        return p if os.path.isabs(p) else os.path.normpath(os.path.join(self.cfg.base_dir, p))

    def _chart(self, chart: str) -> str:
        # Local charts are paths, repository charts are "repo/chart"
        if chart.startswith(".") or chart.startswith("/"):
            return self._path(chart)
        return chart

    def commands(self) -> list[str]:
        return list(self._commands)

    def check_prerequisites(self) -> None:
        for tool in ("kubectl", "helm"):
            if not self.host.which(tool):
                raise ClusterError(f"{tool} is not installed or not in PATH")
        if self.cfg.context is not None:
            current = self.k8s.current_context()
            if current != self.cfg.context:
                raise ClusterError(f"Current kubectl context is '{current}', not '{self.cfg.context}'. Switch with: kubectl config use-context {self.cfg.context}")
            logger.info(f"Current kubectl context is {current}")

    def ensure_namespace(self) -> None:
        ns = self.cfg.namespace
        if self.k8s.namespace_exists(ns):
            logger.info(f"Namespace '{ns}' already exists")
            return
        self.k8s.create_namespace(ns)
        logger.info(f"Namespace '{ns}' created")

    def setup_storage(self) -> None:
        sc = self.cfg.storage_class
        if sc is None:
            return
        if self.k8s.storage_class_exists(sc.name):
            logger.info(f"Storage class '{sc.name}' already exists")
            return
        logger.info(f"Creating storage class '{sc.name}'")
        self.k8s.apply_manifest(self._path(sc.manifest))

    def ensure_repository(self, chart: str) -> None:
        repo_name = chart.split("/", 1)[0]
        for repo in self.cfg.repositories:
            if repo.name != repo_name:
                continue
            if not self.helm.repo_exists(repo.name):
                self.helm.repo_add(repo.name, repo.url)
                self.helm.repo_update()
            return

    def build_image(self, c: ComponentConfig) -> None:
        b = c.build
        assert b is not None
        context = self._path(b.context)
        if b.command:
            logger.info(f"Building {c.name} with {' '.join(b.command)} in {context}")
            ret = self.host.run(b.command, cwd=context)
        else:
            logger.info(f"Building docker image {b.tag} for {c.name}")
            cmd = ["docker", "build", "-t", b.tag]
            if b.dockerfile:
                cmd += ["-f", self._path(b.dockerfile)]
            ret = self.host.run([*cmd, context])
        if not ret.success():
            raise ClusterError(f"Building {c.name} failed {ret}")

        if b.kind_cluster:
            logger.info(f"Loading {b.tag} into kind cluster {b.kind_cluster}")
            ret = self.host.run(["kind", "load", "docker-image", b.tag, f"--name={b.kind_cluster}"])
            if not ret.success():
                raise ClusterError(f"Loading {b.tag} into kind failed {ret}")

    def install_component(self, c: ComponentConfig) -> None:
        ns = self.cfg.namespace
        logger.info(f"Installing {c.label()}")
        if c.needs_storage:
            self.setup_storage()
        if c.build is not None:
            self.build_image(c)

        if self.helm.release_exists(c.release, ns):
            if not c.reinstall:
                logger.info(f"{c.label()} is already installed")
                return
            logger.info(f"{c.label()} is already installed. Uninstalling to reinstall")
            self.helm.uninstall(c.release, ns)

        self.ensure_repository(c.chart)
        timeout = timer.str_to_duration_float(c.timeout) if c.timeout else None
        values = self._path(c.values) if c.values else None
        self.helm.install_or_upgrade(c.release, self._chart(c.chart), ns, values=values, timeout=timeout)
        logger.info(f"{c.label()} installed successfully")

    def wait_for_pods(self) -> bool:
        timeout = timer.str_to_duration_float(self.cfg.wait_timeout)
        ready = True
        for c in self.cfg.components:
            if c.selector is not None:
                ready = self.k8s.wait_for_ready(c.selector, self.cfg.namespace, timeout) and ready
        if ready:
            logger.info("All pods are ready")
        return ready

    def install_all(self) -> None:
        for c in self.cfg.components:
            self.install_component(c)
        if not self.wait_for_pods():
            raise ClusterError(f"Pods in {self.cfg.namespace} not ready after {self.cfg.wait_timeout}")

    def status(self) -> StackStatus:
        ns = self.cfg.namespace
        ns_exists = self.k8s.namespace_exists(ns)
        sc_exists = None
        if self.cfg.storage_class is not None:
            sc_exists = self.k8s.storage_class_exists(self.cfg.storage_class.name)

        releases = self.helm.list_releases(ns) if ns_exists else []
        components = []
        for c in self.cfg.components:
            installed = c.release in releases
            pods = self.k8s.count_pods(c.selector, ns) if installed and c.selector else 0
            components.append(ComponentStatus(c.name, installed, pods))
        return StackStatus(ns_exists, sc_exists, tuple(components))

    def report_status(self) -> None:
        st = self.status()
        ns = self.cfg.namespace
        logger.info(f"Namespace '{ns}' {'exists' if st.namespace_exists else 'does not exist'}")
        if self.cfg.storage_class is not None:
            logger.info(f"Storage class '{self.cfg.storage_class.name}' {'exists' if st.storage_class_exists else 'does not exist'}")
        for cs in st.components:
            c = self.cfg.component(cs.name)
            if cs.installed:
                logger.info(f"{c.label()} is installed, {cs.running_pods} pod(s) running")
            else:
                logger.info(f"{c.label()} is not installed")
        if st.namespace_exists:
            logger.info(f"All pods in {ns} namespace:\n{self.k8s.pod_table(ns)}")

    def prepare(self) -> None:
        self.check_prerequisites()
        self.ensure_namespace()

    def run(self, names: list[str]) -> None:
        unknown = [n for n in names if n not in self._commands]
        if unknown:
            raise ClusterError(f"Unknown component(s) {', '.join(unknown)}, choose from {', '.join(self.commands())}")
        for name in names:
            logger.info(f"running {name}")
            self._commands[name]()

    def menu(self, read: Callable[[str], str] = input) -> None:
        choices = [*self.commands(), "exit"]
        while True:
            lines = [f"{i}) {self._describe(name)}" for i, name in enumerate(choices, start=1)]
            print("\n".join(["", f"Namespace: {self.cfg.namespace}", "Select components to install:", *lines, ""]))
            choice = read(f"Enter your choice (1-{len(choices)}): ").strip()
            if not choice.isdigit() or not 1 <= int(choice) <= len(choices):
                logger.warning(f"Invalid choice '{choice}'")
                continue
            name = choices[int(choice) - 1]
            if name == "exit":
                return
            try:
                self.run([name])
            except ClusterError as e:
                logger.error(str(e))

    def _describe(self, name: str) -> str:
        if name == "all":
            return "Install all components (" + " + ".join(c.label() for c in self.cfg.components) + ")"
        if name == "status":
            return "Check installation status"
        if name == "exit":
            return "Exit"
        return f"Install {self.cfg.component(name).label()}"
