import socket
import subprocess
import os
import time
import shlex
import shutil
import logging
from typing import Optional
from typing import Union
from functools import lru_cache
import paramiko
from paramiko import ssh_exception, RSAKey, Ed25519Key, PKey
from logger import logger
from abc import ABC, abstractmethod


# Same convention as coreutils timeout(1)
TIMEOUT_RETURNCODE = 124
SSH_FAILURE_RETURNCODE = 255

Command = Union[str, list[str]]


def default_id_rsa_path() -> str:
    return os.path.join(os.environ.get("HOME", "/root"), ".ssh/id_rsa")


def default_ed25519_path() -> str:
    return os.path.join(os.environ.get("HOME", "/root"), ".ssh/id_ed25519")


def _cmd_str(cmd: Command) -> str:
    if isinstance(cmd, str):
        return cmd
    return shlex.join(cmd)


class Result:
    def __init__(self, out: str, err: str, returncode: int):
        self.out = out
        self.err = err
        self.returncode = returncode

    def __str__(self) -> str:
        return f"(returncode: {self.returncode}, error: {self.err.strip()})"

    def success(self) -> bool:
        return self.returncode == 0

    def timed_out(self) -> bool:
        return self.returncode == TIMEOUT_RETURNCODE

    @staticmethod
    def result_success() -> 'Result':
        return Result("", "", 0)


class Login(ABC):
    def __init__(self, hostname: str, username: str) -> None:
        self._username = username
        self._hostname = hostname

    def debug_details(self) -> str:
        return str({k: v for k, v in vars(self).items() if k not in ['_pkey', '_password']})

    def _host(self) -> paramiko.SSHClient:
        host = paramiko.SSHClient()
        host.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        return host

    @abstractmethod
    def quiet_login(self) -> paramiko.SSHClient:
        pass


class KeyLogin(Login):
    def __init__(self, hostname: str, username: str, key_path: str) -> None:
        super().__init__(hostname, username)
        self._key_path = key_path
        self._pkey = self._load_key(key_path)

    @staticmethod
    def _load_key(key_path: str) -> PKey:
        try:
            return RSAKey.from_private_key_file(key_path)
        except ssh_exception.SSHException:
            return Ed25519Key.from_private_key_file(key_path)

    def quiet_login(self) -> paramiko.SSHClient:
        host = self._host()
        host.connect(self._hostname, username=self._username, pkey=self._pkey, look_for_keys=False, allow_agent=False)
        return host


class PasswordLogin(Login):
    def __init__(self, hostname: str, username: str, password: str) -> None:
        super().__init__(hostname, username)
        self._password = password

    def quiet_login(self) -> paramiko.SSHClient:
        host = self._host()
        host.connect(self._hostname, username=self._username, password=self._password, look_for_keys=False, allow_agent=False)
        return host


class AutoLogin(Login):
    def quiet_login(self) -> paramiko.SSHClient:
        host = self._host()
        host.connect(self._hostname, username=self._username, look_for_keys=True, allow_agent=True)
        return host


class Host:
    """Runs external tools (docker, helm, kubectl) locally or on a build host over SSH."""

    def __new__(cls, hostname: str) -> 'Host':
        if hostname not in host_instances:
            host_instances[hostname] = super().__new__(cls)
        return host_instances[hostname]

    def __init__(self, hostname: str):
        # Instances are shared per hostname, keep an established session
        if getattr(self, "_hostname", None) == hostname:
            return
        self._hostname = hostname
        self._logins: list[Login] = []
        self._host: Optional[paramiko.SSHClient] = None

    @lru_cache(maxsize=None)
    def is_localhost(self) -> bool:
        return self._hostname in ("localhost", socket.gethostname())

    def hostname(self) -> str:
        return self._hostname

    def ssh_connect(self, username: str, password: Optional[str] = None, *, discover_auth: bool = True, timeout: float = 300) -> None:
        assert not self.is_localhost()
        logger.info(f"connecting to {self._hostname} as {username}")

        self._logins = []
        if password is not None:
            self._logins.append(PasswordLogin(self._hostname, username, password))

        for key_path in (default_id_rsa_path(), default_ed25519_path()):
            if not os.path.exists(key_path):
                continue
            try:
                self._logins.append(KeyLogin(self._hostname, username, key_path))
            except ssh_exception.SSHException as e:
                logger.debug(f"Skipping key {key_path}: {e}")

        if discover_auth:
            self._logins.append(AutoLogin(self._hostname, username))

        self.ssh_connect_looped(self._logins, timeout)

    def ssh_connect_looped(self, logins: list[Login], timeout: float = 300) -> None:
        if not logins:
            raise RuntimeError("No usable logins found")

        login_details = ", ".join([login.debug_details() for login in logins])
        logger.info(f"Attempting SSH connections on {self._hostname} with logins: {login_details}")

        end_time = time.monotonic() + timeout
        while time.monotonic() < end_time:
            for login in logins:
                try:
                    self._host = login.quiet_login()
                    logger.info(f"Login successful on {self._hostname}")
                    return
                except (ssh_exception.AuthenticationException, ssh_exception.NoValidConnectionsError, ssh_exception.SSHException, socket.error, socket.timeout, EOFError) as e:
                    logger.debug(f"{type(e).__name__} - {str(e)} for login {login.debug_details()} on host {self._hostname}")
            time.sleep(10)

        raise ConnectionError(f"Failed to establish an SSH connection to {self._hostname}")

    def run(
        self,
        cmd: Command,
        log_level: int = logging.DEBUG,
        *,
        env: Optional[dict[str, str]] = None,
        input: Optional[str] = None,
        timeout: Optional[float] = None,
        cwd: Optional[str] = None,
        quiet: bool = False,
    ) -> Result:
        if not quiet and log_level >= 0:
            logger.log(log_level, f"running command {_cmd_str(cmd)} on {self._hostname}")
        if self.is_localhost():
            ret_val = self._run_local(cmd, env, input, timeout, cwd)
        else:
            ret_val = self._run_remote(cmd, input, timeout, cwd)

        if not quiet and log_level >= 0:
            logger.log(log_level, ret_val)
        return ret_val

    def _run_local(self, cmd: Command, env: Optional[dict[str, str]], input: Optional[str], timeout: Optional[float], cwd: Optional[str]) -> Result:
        args = shlex.split(cmd) if isinstance(cmd, str) else cmd
        full_env = os.environ.copy()
        if env:
            full_env.update(env)
        pipe = subprocess.PIPE
        try:
            # Own session: a terminal Ctrl-C must not kill a push in progress
            proc = subprocess.Popen(args, stdin=pipe if input is not None else subprocess.DEVNULL, stdout=pipe, stderr=pipe, env=full_env, cwd=cwd, start_new_session=True)
        except FileNotFoundError as e:
            return Result("", str(e), 127)
        with proc:
            try:
                out, err = proc.communicate(input.encode("utf-8") if input is not None else None, timeout=timeout)
            except subprocess.TimeoutExpired:
                proc.kill()
                out, err = proc.communicate()
                return Result(out.decode("utf-8", errors="replace"), f"timed out after {timeout}s", TIMEOUT_RETURNCODE)
        return Result(out.decode("utf-8", errors="replace"), err.decode("utf-8", errors="replace"), proc.returncode)

    def _run_remote(self, cmd: Command, input: Optional[str], timeout: Optional[float], cwd: Optional[str]) -> Result:
        assert self._host is not None
        cmd = _cmd_str(cmd)
        if cwd is not None:
            cmd = f"cd {shlex.quote(cwd)} && {cmd}"
        # Make sure multiline command is not seen as multiple commands
        cmd = cmd.replace("\n", "\\\n")

        try:
            stdin, stdout, stderr = self._host.exec_command(cmd, timeout=timeout)
            if input is not None:
                stdin.write(input)
                stdin.channel.shutdown_write()
            try:
                out = stdout.read().decode("utf-8", errors="replace")
                err = stderr.read().decode("utf-8", errors="replace")
            except socket.timeout:
                stdout.channel.close()
                return Result("", f"timed out after {timeout}s", TIMEOUT_RETURNCODE)
            return Result(out, err, stdout.channel.recv_exit_status())
        except (ssh_exception.SSHException, OSError) as e:
            # Same code ssh(1) exits with when the connection fails
            return Result("", f"ssh to {self._hostname} failed: {type(e).__name__}: {e}", SSH_FAILURE_RETURNCODE)

    def which(self, tool: str) -> bool:
        if self.is_localhost():
            return shutil.which(tool) is not None
        return self.run(["sh", "-c", f"command -v {shlex.quote(tool)}"]).success()

    def close(self) -> None:
        if self._host is not None:
            self._host.close()
            self._host = None


host_instances: dict[str, Host] = {}


def LocalHost() -> Host:
    return Host("localhost")


def RemoteHost(ip: str) -> Host:
    return Host(ip)
