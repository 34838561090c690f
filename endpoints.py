import dataclasses
import socket
import ssl
from typing import Any
import requests
import timer
from errors import ClusterError
from installConfig import EndpointConfig
from k8sClient import K8sClient
from logger import logger


@dataclasses.dataclass(frozen=True)
class CheckResult:
    domain: str
    check: str
    ok: bool
    detail: str = ""
    # A failed soft check is only a warning
    hard: bool = True


def _name(entries: Any) -> str:
    # getpeercert() returns ((("commonName", "x"),), ...)
    return ", ".join(f"{k}={v}" for rdn in entries or () for (k, v) in rdn)


def check_http(domain: str, path: str, description: str, *, timeout: float, expected: list[int]) -> CheckResult:
    url = f"https://{domain}{path}"
    logger.info(f"Testing {description or path}: {url}")
    try:
        resp = requests.get(url, headers={"Host": domain}, timeout=timeout, allow_redirects=False)
        status = resp.status_code
    except requests.exceptions.RequestException as e:
        logger.warning(f"{description or path}: request failed ({type(e).__name__})")
        return CheckResult(domain, f"http {path}", False, str(e), hard=False)
    if status in expected:
        logger.info(f"{description or path}: HTTP {status}")
        return CheckResult(domain, f"http {path}", True, f"HTTP {status}", hard=False)
    logger.warning(f"{description or path}: HTTP {status} (expected {'/'.join(str(x) for x in expected)})")
    return CheckResult(domain, f"http {path}", False, f"HTTP {status}", hard=False)


def check_dns(domain: str) -> CheckResult:
    try:
        addr = socket.gethostbyname(domain)
    except OSError as e:
        logger.error(f"DNS resolution for {domain}: FAILED")
        return CheckResult(domain, "dns", False, str(e))
    logger.info(f"DNS resolution for {domain}: OK ({addr})")
    return CheckResult(domain, "dns", True, addr)


def check_tls(domain: str, *, timeout: float, port: int = 443) -> CheckResult:
    logger.info(f"Testing SSL certificate for {domain}")
    ctx = ssl.create_default_context()
    try:
        with socket.create_connection((domain, port), timeout=timeout) as sock:
            with ctx.wrap_socket(sock, server_hostname=domain) as tls:
                cert = tls.getpeercert()
    except (OSError, ssl.SSLError) as e:
        logger.error(f"SSL certificate for {domain}: INVALID or not accessible ({e})")
        return CheckResult(domain, "tls", False, str(e))
    cert = cert or {}
    detail = f"subject: {_name(cert.get('subject'))}; issuer: {_name(cert.get('issuer'))}; notAfter: {cert.get('notAfter', '?')}"
    logger.info(f"SSL certificate for {domain}: VALID ({detail})")
    return CheckResult(domain, "tls", True, detail)


def run_endpoint_checks(cfg: EndpointConfig, k8s: K8sClient, default_namespace: str) -> list[CheckResult]:
    namespace = cfg.namespace or default_namespace
    timeout = timer.str_to_duration_float(cfg.timeout)

    address = k8s.gateway_address(cfg.gateway, namespace)
    if address is None:
        raise ClusterError(f"Could not get external IP of gateway {cfg.gateway} in {namespace}. Check with: kubectl get gateway {cfg.gateway} -n {namespace}")
    logger.info(f"External IP: {address}")

    results: list[CheckResult] = []
    for domain in cfg.domains:
        for p in cfg.paths:
            results.append(check_http(domain, p.path, p.description, timeout=timeout, expected=cfg.expected_status))
        results.append(check_dns(domain))
        results.append(check_tls(domain, timeout=timeout))

    logger.info("Endpoint testing completed. DNS propagation may take up to 24 hours for new domains")
    return results


def hard_failures(results: list[CheckResult]) -> list[CheckResult]:
    return [r for r in results if r.hard and not r.ok]

