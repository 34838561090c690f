import time
import re


def duration_to_str(duration: float) -> str:
    days = int(duration // 86400)
    hours = int((duration % 86400) // 3600)
    minutes = int((duration % 3600) // 60)
    seconds = round(duration % 60, 2)
    duration_str = ""
    if days > 0:
        duration_str += f"{days}d"
    if hours > 0:
        duration_str += f"{hours}h"
    if minutes > 0:
        duration_str += f"{minutes}m"
    duration_str += f"{seconds:.2f}s"
    return duration_str


def str_to_duration(duration: str) -> tuple[int, int, int, float]:
    pattern = r'(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+(?:\.\d+)?)s)?'
    match = re.fullmatch(pattern, duration.strip())
    if not match or not duration.strip():
        raise ValueError(f"Invalid time format {duration!r}. Expected format like '1d2h30m15.5s'.")
    days, hours, minutes, seconds = (float(x or 0) for x in match.groups())
    return int(days), int(hours), int(minutes), seconds


def str_to_duration_float(duration: str) -> float:
    days, hours, minutes, seconds = str_to_duration(duration)
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def to_go_duration(duration: float) -> str:
    """Format seconds the way helm and kubectl expect their --timeout, e.g. '10m0s'."""
    total = int(round(duration))
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h{minutes}m{seconds}s"
    if minutes:
        return f"{minutes}m{seconds}s"
    return f"{seconds}s"


class StopWatch:
    start_time: float
    end_time: float

    def __init__(self) -> None:
        self.stopped = False

    @staticmethod
    def started() -> 'StopWatch':
        s = StopWatch()
        s.start()
        return s

    def start(self) -> None:
        self.start_time = time.monotonic()
        self.end_time = self.start_time
        self.stopped = False

    def stop(self) -> None:
        self.end_time = time.monotonic()
        self.stopped = True

    def __str__(self) -> str:
        return duration_to_str(self.elapsed())

    def elapsed(self) -> float:
        if self.stopped:
            return self.end_time - self.start_time
        return time.monotonic() - self.start_time
