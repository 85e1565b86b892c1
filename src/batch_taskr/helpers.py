"""Helper utilities for the batch job engine."""

import errno
import functools
import logging
import os
import pathlib
import signal
import socket
import stat
import subprocess
import sys


def configure_logging(
    log,
    level=logging.INFO,
    handler_filters=None,
    fmt_str="[%(name)s:%(levelname)s:%(process)d:%(threadName)s] @ %(asctime)s %(message)s",
):
    """Configure logging with proper formatting and filters."""
    log.propagate = False
    log.setLevel(level)
    formatter = logging.Formatter(fmt_str)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(formatter)
    handler.setLevel(level)

    if handler_filters is not None:
        for _filter in handler_filters:
            handler.addFilter(_filter)

    for old in log.handlers[:]:
        log.removeHandler(old)
        old.close()

    log.addHandler(handler)


def get_logger(name=None, configurer=None, log_level=logging.INFO, custom_logger=None):
    """Get a configured logger instance."""
    if custom_logger:
        return custom_logger
    if not configurer:
        configurer = functools.partial(configure_logging, level=log_level)
    name = name or "batch_taskr"
    logger = logging.getLogger(name)
    configurer(logger)
    return logger


def set_log_level(level):
    """Set the level of every logger created through get_logger."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    for name, log in logging.Logger.manager.loggerDict.items():
        if isinstance(log, logging.Logger) and name.startswith("batch_taskr"):
            log.setLevel(level)
            for handler in log.handlers:
                handler.setLevel(level)
    return level


@functools.lru_cache(maxsize=1)
def hostname() -> str:
    """Short name of this machine, used to tag error logs and lock owners."""
    return socket.gethostname().split(".")[0] or "localhost"


def is_local_host(host) -> bool:
    """True if `host` designates the machine we are running on."""
    if not host:
        return True
    host = host.lower()
    if host in ("localhost", "127.0.0.1", "::1"):
        return True
    return host.split(".")[0] == hostname().lower()


def pid_alive(pid: int) -> bool:
    """Check whether a process on this machine is still running."""
    if pid <= 0:
        return False
    if os.name == "nt":
        out = subprocess.run(
            ["tasklist", "/FI", f"PID eq {pid}"], capture_output=True, text=True
        )
        return str(pid) in out.stdout
    try:
        os.kill(pid, 0)
    except OSError as e:
        return e.errno == errno.EPERM
    return True


def kill_local(pid: int) -> bool:
    """Forcefully kill a process on this machine."""
    logger = get_logger(__name__)
    try:
        if os.name == "nt":
            out = subprocess.run(
                ["taskkill", "/f", "/pid", str(pid)], capture_output=True, text=True
            )
            if out.returncode != 0:
                raise OSError(out.stderr.strip() or out.stdout.strip())
        else:
            os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        logger.debug(f"Process {pid} already gone")
        return True
    except OSError as e:
        logger.error(f"Could not kill process {pid}: {e}")
        return False
    return True


class MultiprocessingHelper:
    """
    Static helper class for Python interpreter discovery.
    """

    @staticmethod
    @functools.lru_cache(maxsize=1)
    def get_python_interpreter():
        """
        Gets the path to a suitable Python interpreter for worker processes.

        The running interpreter is preferred so that workers see the same
        installed packages; otherwise a standalone python executable is
        searched for around the prefix.

        >>> interp = MultiprocessingHelper.get_python_interpreter()
        >>> "python" in interp.name.lower()
        True
        """
        logger = get_logger(__name__)

        if sys.executable and "python" in pathlib.Path(sys.executable).name.lower():
            return pathlib.Path(sys.executable)

        base_paths = [
            sys.prefix,
            sys.exec_prefix,
            sys.executable,
        ]
        exe_suffix = ".exe" if os.name == "nt" else ""
        python_name = f"python{exe_suffix}"

        def base_dirs():
            for dirname in map(pathlib.Path, base_paths):
                yield dirname
                yield dirname.parent
                yield dirname.parent.parent

        for dirname in base_dirs():
            for basename in ["", "bin", "python"]:
                interp_path = dirname / basename / python_name
                if not interp_path.exists():
                    continue

                if not (interp_path.is_file() or interp_path.is_symlink()):
                    continue

                st_mode = interp_path.stat().st_mode
                if not st_mode & (stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH):
                    continue

                logger.debug(f"Found Python interpreter at: {interp_path}")
                return interp_path

        logger.warning(
            "Could not determine Python interpreter path, falling back to 'python' in PATH."
        )
        return pathlib.Path("python")
