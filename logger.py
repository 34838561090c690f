import logging
import os
import threading
from typing import Any
from io import StringIO


class MdaLogger:
    def __init__(self, byte_limit: int = 50 * 1024 * 1024, lvl: int = logging.INFO):
        self.byte_limit = byte_limit
        self.total_bytes = 0
        self.buffer = StringIO()
        # Mirror tasks may run on a thread pool, keep each record whole
        self._lock = threading.RLock()

        self.logger = logging.getLogger("MDA")
        self.logger.setLevel(lvl)
        self.logger.propagate = False
        self.logger.handlers.clear()

        # Add only buffer handler to capture logs
        self.buffer_handler = logging.StreamHandler(self.buffer)
        prefix_fmt = "%(asctime)s %(levelname)s [th:%(thread)s] (%(filename)s:%(lineno)d)"
        date_fmt = "%Y-%m-%d %H:%M:%S"
        formatter = logging.Formatter(f"{prefix_fmt}: %(message)s", date_fmt)
        self.buffer_handler.setFormatter(formatter)
        self.logger.addHandler(self.buffer_handler)

    def set_level(self, lvl: int) -> None:
        self.logger.setLevel(lvl)

    def _clear_buffer(self) -> None:
        self.buffer.seek(0)
        self.buffer.truncate(0)

    def _get_and_clear_buffer(self) -> str:
        content = self.buffer.getvalue()
        self._clear_buffer()
        return content

    def _remaining_bytes(self) -> int:
        return self.byte_limit - self.total_bytes

    def _check_and_output(self) -> None:
        content = self.buffer.getvalue()

        if not content:
            return

        content_bytes = len(content.encode('utf-8'))

        if content_bytes <= self._remaining_bytes():
            print(content, end='', flush=True)
            self.total_bytes += content_bytes
        else:
            if self._remaining_bytes() > 50:
                # Truncate and show partial
                truncated = content.encode('utf-8')[: self._remaining_bytes() - 40].decode('utf-8', errors='ignore')
                self._clear_buffer()
                self.logger.error(truncated + " [TRUNCATED]")
                print(self._get_and_clear_buffer(), flush=True)

            self._clear_buffer()
            self.logger.error(f"Log limit of {self.byte_limit} bytes exceeded")
            print(self._get_and_clear_buffer(), end='', flush=True)
            os._exit(-1)

    def _emit(self, lvl: int, msg: Any, *args: Any, **kwargs: Any) -> None:
        # stacklevel points %(filename)s at the caller instead of this module
        kwargs.setdefault("stacklevel", 3)
        with self._lock:
            self._clear_buffer()
            self.logger.log(lvl, msg, *args, **kwargs)
            self._check_and_output()

    def log(self, lvl: int, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._emit(lvl, msg, *args, **kwargs)

    def debug(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._emit(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._emit(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._emit(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._emit(logging.ERROR, msg, *args, **kwargs)

    def critical(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._emit(logging.CRITICAL, msg, *args, **kwargs)

    def exception(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        kwargs.setdefault("exc_info", True)
        self._emit(logging.ERROR, msg, *args, **kwargs)

    def error_and_exit(self, msg: str, *, exit_code: int = 1) -> None:
        self.error(msg)
        os._exit(exit_code)


def _level_from_env() -> int:
    log_level = logging.INFO
    env_level = os.environ.get("MDA_LOG_LEVEL")
    if env_level:
        env_level = env_level.strip().upper()
        if env_level in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            log_level = getattr(logging, env_level)
    return log_level


def configure_mda_logger() -> MdaLogger:
    return MdaLogger(lvl=_level_from_env())


def configure_logger(lvl: int) -> MdaLogger:
    logger.set_level(lvl)
    return logger


logger = configure_mda_logger()
