import re
import time
import pathlib

_red = "\033[91m"
_green = "\033[92m"
_orange = "\033[93m"
_blue = "\033[94m"
_magenta = "\033[95m"
_cyan = "\033[96m"
_end = "\033[0m"
_bold = "\033[1m"
_underline = "\033[4m"

_mask = "****"
_secrets = []
_log_file = None

# Regex to strip ANSI escape sequences from strings
_ansi_escape = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")


def register_secret(secret: str):
    """
    Registers a value that must never be shown. Every printed message is searched for registered values and they
    are replaced by a mask.

    Args:
        secret:
            The value to hide. Empty values are ignored.

    Returns:
        None

    Raises:
        None
    """

    if secret and secret not in _secrets:
        _secrets.append(secret)
        # Replace longer secrets first, in case one secret contains another one
        _secrets.sort(key=len, reverse=True)


def clear_secrets():
    _secrets.clear()


def mask(message: str) -> str:
    for secret in _secrets:
        message = message.replace(secret, _mask)
    return message


def set_log_file(log_file: pathlib.Path):
    """
    Sets a file to which all messages are appended in addition to the standard output. Pass None to stop logging.

    Args:
        log_file:
            Log file as pathlib.Path object or None.

    Returns:
        None

    Raises:
        None
    """

    global _log_file
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    _log_file = log_file


def _emit(prefix: str, color: str, message: str, end: str, flush: bool):
    message = mask(message)
    print(color + prefix + message + _end, end=end, flush=flush)
    if _log_file is not None:
        with _log_file.open("a") as f:
            timestamp = time.strftime("%Y-%m-%d %H:%M:%S")
            print(f"{timestamp} {_ansi_escape.sub('', prefix + message).strip()}", file=f)


def print_info(message: str, end: str = "\n", flush: bool = True):
    _emit("[INFO] ", _blue, message, end, flush)


def print_warning(message: str, end: str = "\n", flush: bool = True):
    _emit("[WARNING] ", _orange, message, end, flush)


def print_error(message: str, end: str = "\n", flush: bool = True):
    _emit("[ERROR] ", _red, message, end, flush)


def print_build_stage(message: str, end: str = "\n", flush: bool = True):
    _emit("\n> ", _green, message, end, flush)


def print_build(message: str, end: str = "\n", flush: bool = True):
    _emit(">> ", _cyan, message, end, flush)


def print_clean(message: str, end: str = "\n", flush: bool = True):
    _emit(">> ", _magenta, message, end, flush)
