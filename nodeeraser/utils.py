"""Shared helpers: endpoints, image bookkeeping, exclusion lists and pipes."""

from __future__ import annotations

import json
import os
import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping
from urllib.parse import unquote

UNIX_PROTOCOL = "unix"
PIPE_MODE = 0o644
SCAN_ERASE_PATH = "/run/eraser.sh/shared-data/scanErase"
COLLECT_SCAN_PATH = "/run/eraser.sh/shared-data/collectScan"
ERASE_COMPLETE_COLLECT_PATH = "/run/eraser.sh/shared-data/eraseCompleteCollect"
ERASE_COMPLETE_MESSAGE = "complete"
ERASE_COMPLETE_SCAN_PATH = "/run/eraser.sh/shared-data/eraseCompleteScan"

RUNTIME_DOCKER = "docker"
RUNTIME_CONTAINERD = "containerd"
RUNTIME_CRIO = "cri-o"
DOCKER_PATH = "/run/dockershim.sock"
CONTAINERD_PATH = "/run/containerd/containerd.sock"
CRIO_PATH = "/run/crio/crio.sock"

ENV_ERASER_CONTAINER_RUNTIME = "ERASER_CONTAINER_RUNTIME"

RUNTIME_SOCKET_PATHS = {
    RUNTIME_DOCKER: DOCKER_PATH,
    RUNTIME_CONTAINERD: CONTAINERD_PATH,
    RUNTIME_CRIO: CRIO_PATH,
}

DEFAULT_NAMESPACE = "eraser-system"


@dataclass
class Image:
    """An image on a node: its id plus the names and digests that refer to it."""

    image_id: str
    names: list[str] = field(default_factory=list)
    digests: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"image_id": self.image_id}
        if self.names:
            data["names"] = list(self.names)
        if self.digests:
            data["digests"] = list(self.digests)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Image":
        return cls(
            image_id=data.get("image_id", ""),
            names=list(data.get("names") or []),
            digests=list(data.get("digests") or []),
        )


class EndpointError(ValueError):
    """An endpoint could not be used; ``protocol`` is the scheme, if one was found."""

    def __init__(self, message: str, protocol: str = "") -> None:
        super().__init__(message)
        self.protocol = protocol


class EndpointParseError(EndpointError):
    """The endpoint is not a well-formed URL."""


class ProtocolNotSupportedError(EndpointError):
    """The endpoint's scheme is neither tcp nor unix."""


class EndpointDeprecatedError(EndpointError):
    """The endpoint has no scheme."""


class OnlySupportUnixSocketError(EndpointError):
    """Only unix socket endpoints may be dialled."""


_SCHEME_RE = re.compile(r"[A-Za-z][A-Za-z0-9+.\-]*:")
_HOST_CHARS = frozenset(
    "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
    "-._~!$&'()*+,;=:[]%<>\""
)


def _parse_url(endpoint: str) -> tuple[str, str, str]:
    """Split ``endpoint`` into scheme, host and path, rejecting malformed input."""

    def fail(reason: str) -> EndpointParseError:
        return EndpointParseError(f"error while parsing: parse {endpoint!r}: {reason}")

    if any(ord(ch) < 0x20 or ch == "\x7f" for ch in endpoint):
        raise fail("net/url: invalid control character in URL")
    rest = endpoint.split("#", 1)[0]
    if rest.startswith(":"):
        raise fail("missing protocol scheme")

    match = _SCHEME_RE.match(rest)
    scheme = ""
    if match:
        scheme = match.group(0)[:-1].lower()
        rest = rest[match.end():]
    rest = rest.split("?", 1)[0]

    if not scheme and not rest.startswith("/"):
        first_segment = rest.split("/", 1)[0]
        if ":" in first_segment:
            raise fail("first path segment in URL cannot contain colon")

    host = ""
    if rest.startswith("//") and (scheme or not rest.startswith("///")):
        authority, slash, path = rest[2:].partition("/")
        rest = slash + path
        host = authority.rpartition("@")[2]
        bad = [ch for ch in host if ch not in _HOST_CHARS]
        if bad:
            raise fail(f"invalid character {bad[0]!r} in host name")
    return scheme, host, unquote(rest)


def parse_endpoint(endpoint: str) -> tuple[str, str]:
    """Return ``(protocol, address)`` for a ``tcp://`` or ``unix://`` endpoint."""
    scheme, host, path = _parse_url(endpoint)
    if scheme == "tcp":
        return "tcp", host
    if scheme == "unix":
        return "unix", path
    if scheme == "":
        raise EndpointDeprecatedError(
            f'using "{endpoint}" as endpoint is deprecated, '
            "please consider using full url format"
        )
    raise ProtocolNotSupportedError(
        f'"{scheme}": protocol not supported', protocol=scheme
    )


def parse_endpoint_with_fallback_protocol(
    endpoint: str, fallback_protocol: str
) -> tuple[str, str]:
    """Parse ``endpoint``, retrying with ``fallback_protocol`` when it has no scheme."""
    try:
        return parse_endpoint(endpoint)
    except EndpointError as err:
        if err.protocol:
            raise
    return parse_endpoint(f"{fallback_protocol}://{endpoint}")


def get_address(endpoint: str) -> str:
    """Return the socket path of a unix endpoint."""
    protocol, address = parse_endpoint_with_fallback_protocol(endpoint, UNIX_PROTOCOL)
    if protocol != UNIX_PROTOCOL:
        raise OnlySupportUnixSocketError(
            "only support unix socket endpoint", protocol=protocol
        )
    return address


def get_running_images(
    containers: Iterable[Any], id_to_image: Mapping[str, Image]
) -> dict[str, str]:
    """Map every id, name and digest of images used by containers to the image id."""
    running: dict[str, str] = {}
    for container in containers:
        spec = container.image
        image_id = spec.image if spec is not None else ""
        running[image_id] = image_id
        image = id_to_image.get(image_id)
        if image is None:
            continue
        for ref in (*image.names, *image.digests):
            running[ref] = image_id
    return running


def get_non_running_images(
    running_images: Mapping[str, str],
    all_images: Iterable[Image],
    id_to_image: Mapping[str, Image],
) -> dict[str, str]:
    """Map every id, name and digest of images not in use to the image id."""
    non_running: dict[str, str] = {}
    for img in all_images:
        image_id = img.image_id
        if image_id in running_images:
            continue
        non_running[image_id] = image_id
        image = id_to_image.get(image_id)
        if image is None:
            continue
        for ref in (*image.names, *image.digests):
            non_running[ref] = image_id
    return non_running


def is_excluded(
    excluded: Iterable[str] | None, img: str, id_to_image: Mapping[str, Image]
) -> bool:
    """Tell whether ``img`` (an id, name or digest) matches the exclusion list.

    Entries ending in ``/*`` exclude a whole repository and entries ending in
    ``:*`` exclude every tag of an image.
    """
    excluded = set(excluded or ())
    if not excluded:
        return False

    image = id_to_image.get(img)
    refs = [*image.names, *image.digests] if image is not None else []

    if img in excluded or any(ref in excluded for ref in refs):
        return True

    candidates = [img, *refs]
    for key in excluded:
        prefixes = []
        if key.endswith("/*"):
            prefixes.append(key.split("*")[0])
        if key.endswith(":*"):
            prefixes.append(key.split(":")[0])
        for prefix in prefixes:
            if any(candidate.startswith(prefix) for candidate in candidates):
                return True
    return False


def _string_list(data: Any, what: str) -> list[str]:
    if not isinstance(data, list) or not all(isinstance(x, str) for x in data):
        raise ValueError(f"{what} must be a JSON array of strings")
    return data


def parse_image_list(path: str | os.PathLike[str]) -> list[str]:
    """Read a JSON array of image references from ``path``."""
    with open(path, encoding="utf-8") as handle:
        return _string_list(json.load(handle), "image list")


def _read_config_map(path: str) -> list[str]:
    json_files = sorted(
        entry.name for entry in os.scandir(path) if entry.name.endswith(".json")
    )
    if not json_files:
        raise ValueError(f"no .json file in exclusion directory {path}")
    with open(os.path.join(path, json_files[0]), encoding="utf-8") as handle:
        data = json.load(handle)
    if not isinstance(data, dict):
        raise ValueError(f"exclusion file in {path} must hold a JSON object")
    return _string_list(data.get("excluded") or [], "excluded")


def parse_excluded(directory: str | os.PathLike[str] = ".") -> set[str]:
    """Gather excluded references from the ``exclude-*`` directories in ``directory``."""
    base = os.fspath(directory)
    excluded: set[str] = set()
    for name in sorted(os.listdir(base)):
        if name.startswith("exclude-"):
            excluded.update(_read_config_map(os.path.join(base, name)))
    return excluded


def process_repo_digests(repo_digests: Iterable[str]) -> tuple[list[str], list[ValueError]]:
    """Extract the unique digests from ``repo@digest`` strings.

    Returns the digests and an error for every malformed entry.
    """
    digests: dict[str, None] = {}
    errors: list[ValueError] = []
    for repo_digest in repo_digests:
        parts = repo_digest.split("@")
        if len(parts) < 2:
            errors.append(
                ValueError(f"repoDigest not formatted correctly: {repo_digest}")
            )
            continue
        digests[parts[1]] = None
    return list(digests), errors


def build_image_index(
    cri_images: Iterable[Any],
) -> tuple[list[Image], dict[str, Image], list[ValueError]]:
    """Turn runtime image records into :class:`Image` values.

    Returns the images in order, the same images keyed by id, and the errors
    met while reading their repo digests.
    """
    images: list[Image] = []
    by_id: dict[str, Image] = {}
    errors: list[ValueError] = []
    for record in cri_images:
        digests, digest_errors = process_repo_digests(record.repo_digests or [])
        errors.extend(digest_errors)
        image = Image(
            image_id=record.id, names=list(record.repo_tags or []), digests=digests
        )
        images.append(image)
        by_id[record.id] = image
    return images, by_id, errors


def _images_from_json(data: bytes | str) -> list[Image]:
    decoded = json.loads(data)
    if not isinstance(decoded, list):
        raise ValueError("image data must be a JSON array")
    return [Image.from_dict(item) for item in decoded]


def read_collect_scan_pipe(
    path: str | os.PathLike[str] = COLLECT_SCAN_PATH, timeout: float | None = None
) -> list[Image]:
    """Wait for ``path`` to appear, then read the images written to it.

    Polls once a second; raises :class:`TimeoutError` if ``timeout`` seconds
    pass first.
    """
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        try:
            handle = open(path, "rb")
            break
        except FileNotFoundError:
            if deadline is None:
                time.sleep(1.0)
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"timed out waiting for {os.fspath(path)}") from None
            time.sleep(min(1.0, remaining))
    with handle:
        return _images_from_json(handle.read())


def write_scan_erase_pipe(
    images: Iterable[Image], path: str | os.PathLike[str] = SCAN_ERASE_PATH
) -> None:
    """Create a named pipe at ``path`` and write the images to it as JSON."""
    data = json.dumps([img.to_dict() for img in images]).encode()
    os.mkfifo(path, PIPE_MODE)
    with open(path, "wb") as handle:
        handle.write(data)


def get_namespace() -> str:
    """Return the pod namespace from ``POD_NAMESPACE``, or the default."""
    return os.environ.get("POD_NAMESPACE", DEFAULT_NAMESPACE)