#!/usr/bin/env python3

# PYTHON_ARGCOMPLETE_OK
import argparse
import sys
from typing import Optional
import host
import arguments
import installConfig
import mirrorConfig
import endpoints
from errors import AuthenticationError, ClusterError, ConfigError
from helmClient import HelmClient
from installer import Installer
from k8sClient import K8sClient
from logger import logger
from mirror import Cancellation, MirrorOrchestrator, interrupts_deferred, EXIT_CANCELLED, EXIT_CONFIG, EXIT_OK, EXIT_PARTIAL
from registryClient import DockerRegistryClient
from validate import validate_images
from verifier import RetryPolicy, Verifier


def docker_host(args: argparse.Namespace) -> host.Host:
    if args.docker_host == "localhost":
        return host.LocalHost()
    h = host.RemoteHost(args.docker_host)
    h.ssh_connect(args.ssh_user)
    return h


def prepare_registry_client(cfg: mirrorConfig.MirrorConfig, h: host.Host) -> DockerRegistryClient:
    client = DockerRegistryClient(h, cfg.timeouts)
    buildx = client.check_tools()
    if not buildx:
        if cfg.require_manifest_copy:
            raise ConfigError("docker buildx is required (require_manifest_copy) but not available")
        if cfg.verify.method == "inspect":
            raise ConfigError("verify.method 'inspect' needs docker buildx, which is not available")
    elif cfg.buildx_builder:
        client.ensure_builder(cfg.buildx_builder)
    return client


def main_mirror(args: argparse.Namespace) -> int:
    cfg = mirrorConfig.load(args.config)
    # Fail before touching docker or the network
    credentials = cfg.credentials()
    tasks = cfg.tasks()

    client = prepare_registry_client(cfg, docker_host(args))
    policy = RetryPolicy(cfg.verify.max_attempts, cfg.verify.backoff_seconds())
    verifier = Verifier(client, policy, cfg.verify.method)

    with interrupts_deferred(Cancellation()) as cancel:
        orchestrator = MirrorOrchestrator(client, verifier, namespace=cfg.namespace(), parallel=args.jobs or cfg.parallel, cancel=cancel)
        summary = orchestrator.run(tasks, credentials)
    return summary.exit_code()


def main_validate(args: argparse.Namespace) -> int:
    cfg = mirrorConfig.load(args.config)
    credentials = cfg.credentials()
    refs = cfg.expected_destinations()

    client = DockerRegistryClient(docker_host(args), cfg.timeouts)
    if not client.check_tools():
        raise ConfigError("validation needs docker buildx imagetools, which is not available")
    session = client.login(credentials)
    checks = validate_images(client, refs, session)
    return EXIT_OK if all(c.exists for c in checks) else EXIT_PARTIAL


def _installer(path: str) -> Installer:
    cfg = installConfig.load(path)
    h = host.LocalHost()
    helm = HelmClient(h, kube_context=cfg.context, kubeconfig=cfg.kubeconfig)
    k8s = K8sClient(cfg.kubeconfig, cfg.context, h)
    return Installer(cfg, helm, k8s, h)


def main_install(args: argparse.Namespace) -> int:
    inst = _installer(args.config)
    names = args.components or ["all"]
    unknown = [n for n in names if n not in inst.commands()]
    for name in unknown:
        suggestion = arguments.fuzzy_match(name, inst.commands())
        logger.error(f"Unknown component '{name}'" + (f" Did you mean '{suggestion}'?" if suggestion else ""))
    if unknown:
        return EXIT_CONFIG

    inst.prepare()
    if args.interactive:
        try:
            inst.menu()
        except EOFError:
            pass
    else:
        inst.run(names)
    return EXIT_OK


def main_status(args: argparse.Namespace) -> int:
    inst = _installer(args.config)
    inst.report_status()
    return EXIT_OK


def main_test_endpoints(args: argparse.Namespace) -> int:
    cfg = installConfig.load(args.config)
    if cfg.endpoints is None:
        raise ConfigError(f"{args.config} has no endpoints section")
    k8s = K8sClient(cfg.kubeconfig, cfg.context)
    results = endpoints.run_endpoint_checks(cfg.endpoints, k8s, cfg.namespace)
    failures = endpoints.hard_failures(results)
    for f in failures:
        logger.error(f"{f.domain}: {f.check} failed: {f.detail}")
    return EXIT_PARTIAL if failures else EXIT_OK


COMMANDS = {
    arguments.MIRROR: main_mirror,
    arguments.VALIDATE: main_validate,
    arguments.INSTALL: main_install,
    arguments.STATUS: main_status,
    arguments.TEST_ENDPOINTS: main_test_endpoints,
}


def main(argv: Optional[list[str]] = None) -> int:
    args = arguments.parse_args(argv)
    try:
        return COMMANDS[args.subcommand](args)
    except (ConfigError, AuthenticationError, ConnectionError) as e:
        logger.error(str(e))
        return EXIT_CONFIG
    except ClusterError as e:
        logger.error(str(e))
        return EXIT_PARTIAL
    except KeyboardInterrupt:
        logger.error("Aborted")
        return EXIT_CANCELLED


if __name__ == "__main__":
    sys.exit(main())
