"""Clients for the container runtime interface (CRI) in its v1 and v1alpha2 forms.

A connection object hands out the runtime's services for a given API version:

* ``conn.runtime_service(version)`` with ``version()`` returning the runtime's
  API version string and ``list_containers()``;
* ``conn.image_service(version)`` with ``list_images()`` and
  ``remove_image(spec)``, which raises :class:`ImageNotFoundError` when the
  runtime does not know the image.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Protocol


class RuntimeVersion(str, Enum):
    """CRI API versions understood by the clients."""

    V1 = "v1"
    V1ALPHA2 = "v1alpha2"


@dataclass
class ImageSpec:
    image: str = ""
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class ContainerMetadata:
    name: str = ""
    attempt: int = 0


@dataclass
class CriContainer:
    id: str = ""
    pod_sandbox_id: str = ""
    metadata: ContainerMetadata | None = None
    image: ImageSpec | None = None
    image_ref: str = ""
    state: int = 0
    created_at: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)


@dataclass
class CriImage:
    id: str = ""
    repo_tags: list[str] = field(default_factory=list)
    repo_digests: list[str] = field(default_factory=list)
    size: int = 0
    uid: int | None = None
    username: str = ""
    spec: ImageSpec | None = None
    pinned: bool = False


class ImageNotFoundError(LookupError):
    """Raised by an image service when the image to remove does not exist."""


class AggregateError(Exception):
    """Several errors gathered while trying alternatives; one per line."""

    def __init__(self, errors: Iterable[BaseException] = ()) -> None:
        super().__init__()
        self.errors: list[BaseException] = [e for e in errors if e is not None]

    def append(self, err: BaseException | None) -> None:
        if err is None:
            return
        self.errors.append(err)

    def __str__(self) -> str:
        return "\n".join(str(err) for err in self.errors)


class _ImageService(Protocol):
    def list_images(self) -> list[Any]: ...

    def remove_image(self, spec: ImageSpec) -> Any: ...


class _RuntimeService(Protocol):
    def version(self) -> str: ...

    def list_containers(self) -> list[Any]: ...


class _Connection(Protocol):
    def image_service(self, version: RuntimeVersion) -> _ImageService: ...

    def runtime_service(self, version: RuntimeVersion) -> _RuntimeService: ...


def _remove(images: _ImageService, image: str) -> None:
    if not image:
        return
    try:
        images.remove_image(ImageSpec(image=image))
    except ImageNotFoundError:
        return


class V1Client:
    """Collector and eraser operations against a v1 runtime."""

    def __init__(self, images: _ImageService, runtime: _RuntimeService) -> None:
        self.images = images
        self.runtime = runtime

    def list_images(self) -> list[CriImage]:
        return list(self.images.list_images())

    def list_containers(self) -> list[CriContainer]:
        return list(self.runtime.list_containers())

    def delete_image(self, image: str) -> None:
        """Remove an image; an empty name or an image already gone is not an error."""
        _remove(self.images, image)


class V1Alpha2Client:
    """Collector and eraser operations against a v1alpha2 runtime, in v1 shapes."""

    def __init__(self, images: _ImageService, runtime: _RuntimeService) -> None:
        self.images = images
        self.runtime = runtime

    def list_images(self) -> list[CriImage | None]:
        return [convert_image(img) for img in self.images.list_images()]

    def list_containers(self) -> list[CriContainer | None]:
        return [convert_container(c) for c in self.runtime.list_containers()]

    def delete_image(self, image: str) -> None:
        """Remove an image; an empty name or an image already gone is not an error."""
        _remove(self.images, image)


def _convert_spec(spec: Any) -> ImageSpec | None:
    if spec is None:
        return None
    return ImageSpec(image=spec.image, annotations=dict(spec.annotations or {}))


def convert_container(container: Any) -> CriContainer | None:
    """Convert a v1alpha2 container record to a :class:`CriContainer`."""
    if container is None:
        return None
    metadata = None
    if container.metadata is not None:
        metadata = ContainerMetadata(
            name=container.metadata.name, attempt=container.metadata.attempt
        )
    return CriContainer(
        id=container.id,
        pod_sandbox_id=container.pod_sandbox_id,
        metadata=metadata,
        image=_convert_spec(container.image),
        image_ref=container.image_ref,
        state=int(container.state),
        created_at=container.created_at,
        labels=dict(container.labels or {}),
        annotations=dict(container.annotations or {}),
    )


def convert_image(image: Any) -> CriImage | None:
    """Convert a v1alpha2 image record to a :class:`CriImage`.

    The uid may be a plain integer or a wrapper carrying it in ``value``.
    """
    if image is None:
        return None
    uid = image.uid
    if uid is not None:
        uid = getattr(uid, "value", uid)
    return CriImage(
        id=image.id,
        repo_tags=list(image.repo_tags or []),
        repo_digests=list(image.repo_digests or []),
        size=image.size,
        uid=uid,
        username=image.username,
        spec=_convert_spec(image.spec),
        pinned=image.pinned,
    )


def get_client_from_runtime_version(
    conn: _Connection, runtime_api_version: str
) -> V1Client | V1Alpha2Client:
    """Build the client matching the API version the runtime reported."""
    if runtime_api_version == RuntimeVersion.V1.value:
        return V1Client(
            images=conn.image_service(RuntimeVersion.V1),
            runtime=conn.runtime_service(RuntimeVersion.V1),
        )
    if runtime_api_version == RuntimeVersion.V1ALPHA2.value:
        return V1Alpha2Client(
            images=conn.image_service(RuntimeVersion.V1ALPHA2),
            runtime=conn.runtime_service(RuntimeVersion.V1ALPHA2),
        )
    raise ValueError(f"unrecognized CRI version: '{runtime_api_version}'")


def new_client_with_fallback(conn: _Connection) -> V1Client | V1Alpha2Client:
    """Ask the runtime for its version over v1, then v1alpha2, and build a client.

    Raises :class:`AggregateError` holding every failure when neither works.
    """
    errors = AggregateError()
    for version in (RuntimeVersion.V1, RuntimeVersion.V1ALPHA2):
        try:
            reported = conn.runtime_service(version).version()
            return get_client_from_runtime_version(conn, reported)
        except Exception as err:  # each attempt's failure is collected
            errors.append(err)
    raise errors