import base64
import hashlib
import re
import time
from typing import Callable, Dict, Optional, Tuple

DATA_SOURCE_KEYS = ("data source", "server", "address", "addr", "network address")
LOCAL_ALIASES = (".", "(local)", "(localdb)")

_INVALID_FILE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def parse_connection_string(connection_string: str) -> Dict[str, str]:
    """
    Split `key=value;key=value` into a dict with lower-cased keys.
    Values wrapped in braces or quotes are unwrapped.
    """
    result: Dict[str, str] = {}
    for part in (connection_string or "").split(";"):
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        key = " ".join(key.strip().lower().split())
        value = value.strip()
        if len(value) >= 2 and value[0] == "{" and value[-1] == "}":
            value = value[1:-1]
        elif len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
            value = value[1:-1]
        if key:
            result[key] = value
    return result


def get_data_source(connection_string: str) -> Optional[str]:
    if not connection_string or not connection_string.strip():
        return None
    parts = parse_connection_string(connection_string)
    for key in DATA_SOURCE_KEYS:
        value = parts.get(key)
        if value:
            return value
    return None


def parse_endpoint(data_source: Optional[str]) -> Optional[Tuple[str, Optional[int]]]:
    """
    Normalise a data source into (host, port).

    Handles `tcp:`/`np:`/`lpc:` prefixes, `[ipv6],port`, `host,port` and
    `host\\instance`. Loopback aliases map to `localhost`. Returns None when
    no host can be extracted.
    """
    if not data_source or not data_source.strip():
        return None

    value = data_source.strip()
    lowered = value.lower()
    if lowered.startswith("tcp:"):
        value = value[4:]
    elif lowered.startswith("np:") or lowered.startswith("lpc:"):
        value = value[value.index(":") + 1:]
    value = value.strip()
    if not value:
        return None

    host: Optional[str] = None
    port_text = ""
    if value.startswith("["):
        closing = value.find("]")
        if closing > 0:
            host = value[1:closing]
            rest = value[closing + 1:]
            if rest.startswith(",") and len(rest) > 1:
                port_text = rest[1:]
        else:
            host = value

    if host is None:
        if "," in value:
            host, port_text = value.split(",", 1)
        else:
            host = value

    host = host.split("\\", 1)[0].strip()
    if not host:
        return None
    if host.lower() in LOCAL_ALIASES or host.lower() == "localhost":
        host = "localhost"

    port = None
    port_text = port_text.strip()
    if port_text.isdigit():
        port = int(port_text)
    return host, port


def pooling_enabled(connection_string: str) -> bool:
    value = parse_connection_string(connection_string).get("pooling")
    if value is None:
        return True
    return value.lower() not in ("0", "false", "no", "off")


def hash_target(target: str) -> str:
    """
    SHA256 of the target descriptor, base64 encoded. Used instead of the raw
    connection string wherever a target is persisted.
    """
    digest = hashlib.sha256(target.encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")


def sanitize_file_name(value: str) -> str:
    return _INVALID_FILE_CHARS.sub("_", value)


def measure(func: Callable[[], object]) -> float:
    """
    Run `func` and return its elapsed wall time in milliseconds.
    """
    start = time.perf_counter()
    func()
    return (time.perf_counter() - start) * 1000.0


def elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0
