"""In-process metric instruments and export to an OTLP/HTTP collector."""

from __future__ import annotations

import bisect
import json
import logging
import os
import re
import time
import urllib.error
import urllib.request
from typing import Any, Callable, Mapping, Sequence

IMAGES_REMOVED_COUNTER = "images_removed_run_total"
IMAGES_REMOVED_DESCRIPTION = "total images removed"
VULNERABLE_IMAGES_COUNTER = "vulnerable_images_run_total"
IMAGEJOB_DURATION_HISTOGRAM = "imagejob_duration_run_seconds"
PODS_COMPLETED_COUNTER = "pods_completed_run_total"
PODS_FAILED_COUNTER = "pods_failed_run_total"
IMAGEJOB_TOTAL_COUNTER = "imagejob_run_total"

METER_NAME = "eraser"
DEFAULT_ENDPOINT = "localhost:4318"
DURATION_BOUNDARIES = (0.0, 10.0, 20.0, 30.0, 40.0, 50.0, 60.0)
DEFAULT_BOUNDARIES = (
    0.0, 5.0, 10.0, 25.0, 50.0, 75.0, 100.0, 250.0, 500.0,
    750.0, 1000.0, 2500.0, 5000.0, 7500.0, 10000.0,
)
EXPORT_TIMEOUT = 10.0

_CUMULATIVE = 2
_NAME_RE = re.compile(r"[A-Za-z][A-Za-z0-9_.\-]{0,62}")

log = logging.getLogger("nodeeraser.metrics")

_Key = tuple[tuple[str, str], ...]


def _key(attributes: Mapping[str, Any] | None) -> _Key:
    return tuple(sorted((str(k), str(v)) for k, v in (attributes or {}).items()))


class Counter:
    """A monotonic sum, kept separately for each attribute set."""

    kind = "sum"

    def __init__(self, name: str, description: str = "", unit: str = "1") -> None:
        self.name = name
        self.description = description
        self.unit = unit
        self._values: dict[_Key, int | float] = {}

    def add(self, value: int | float, attributes: Mapping[str, Any] | None = None) -> None:
        if value < 0:
            log.warning("dropping negative increment %s for counter %s", value, self.name)
            return
        key = _key(attributes)
        self._values[key] = self._values.get(key, 0) + value

    def _data(self) -> dict[str, Any] | None:
        if not self._values:
            return None
        return {
            "name": self.name,
            "description": self.description,
            "unit": self.unit,
            "kind": self.kind,
            "points": [
                {"attributes": dict(key), "value": value}
                for key, value in self._values.items()
            ],
        }


class Histogram:
    """Explicit-bucket distribution of recorded values per attribute set."""

    kind = "histogram"

    def __init__(
        self,
        name: str,
        description: str = "",
        unit: str = "",
        boundaries: Sequence[float] | None = None,
    ) -> None:
        self.name = name
        self.description = description
        self.unit = unit
        self.boundaries = sorted(
            float(b) for b in (DEFAULT_BOUNDARIES if boundaries is None else boundaries)
        )
        self._points: dict[_Key, dict[str, Any]] = {}

    def record(self, value: float, attributes: Mapping[str, Any] | None = None) -> None:
        key = _key(attributes)
        point = self._points.get(key)
        if point is None:
            point = {
                "count": 0,
                "sum": 0.0,
                "min": value,
                "max": value,
                "bucket_counts": [0] * (len(self.boundaries) + 1),
            }
            self._points[key] = point
        point["count"] += 1
        point["sum"] += value
        point["min"] = min(point["min"], value)
        point["max"] = max(point["max"], value)
        point["bucket_counts"][bisect.bisect_left(self.boundaries, value)] += 1

    def _data(self) -> dict[str, Any] | None:
        if not self._points:
            return None
        return {
            "name": self.name,
            "description": self.description,
            "unit": self.unit,
            "kind": self.kind,
            "bounds": list(self.boundaries),
            "points": [
                {"attributes": dict(key), **point, "bucket_counts": list(point["bucket_counts"])}
                for key, point in self._points.items()
            ],
        }


class Meter:
    """A named scope handing out instruments; repeated requests share one instrument."""

    def __init__(self, name: str, views: Mapping[str, Sequence[float]] | None = None) -> None:
        self.name = name
        self._views = dict(views or {})
        self._instruments: dict[str, Counter | Histogram] = {}

    def _instrument(self, kind: type, name: str, build: Callable[[], Any]) -> Any:
        if not _NAME_RE.fullmatch(name):
            raise ValueError(f"invalid instrument name: {name!r}")
        existing = self._instruments.get(name)
        if existing is not None:
            if not isinstance(existing, kind):
                raise ValueError(f"instrument {name!r} already registered as {existing.kind}")
            return existing
        instrument = build()
        self._instruments[name] = instrument
        return instrument

    def counter(self, name: str, description: str = "", unit: str = "1") -> Counter:
        return self._instrument(Counter, name, lambda: Counter(name, description, unit))

    def histogram(
        self,
        name: str,
        description: str = "",
        unit: str = "",
        boundaries: Sequence[float] | None = None,
    ) -> Histogram:
        bounds = boundaries if boundaries is not None else self._views.get(name)
        return self._instrument(
            Histogram, name, lambda: Histogram(name, description, unit, bounds)
        )

    def _collect(self) -> list[dict[str, Any]]:
        return [d for d in (i._data() for i in self._instruments.values()) if d]


class MeterProvider:
    """Owns meters, the histogram views applied to them, and the export endpoint."""

    def __init__(
        self,
        endpoint: str | None = None,
        views: Mapping[str, Sequence[float]] | None = None,
    ) -> None:
        self.endpoint = endpoint or DEFAULT_ENDPOINT
        self.views = dict(views or {})
        self.start_time_ns = time.time_ns()
        self._meters: dict[str, Meter] = {}

    def meter(self, name: str) -> Meter:
        found = self._meters.get(name)
        if found is None:
            found = Meter(name, self.views)
            self._meters[name] = found
        return found

    def collect(self) -> list[dict[str, Any]]:
        """Return the current data as ``[{"scope": name, "metrics": [...]}]``."""
        scopes = []
        for name, meter in self._meters.items():
            metrics = meter._collect()
            if metrics:
                scopes.append({"scope": name, "metrics": metrics})
        return scopes


def configure_metrics(endpoint: str) -> MeterProvider:
    """Create a provider exporting to ``endpoint`` with the job-duration buckets."""
    return MeterProvider(
        endpoint=endpoint, views={IMAGEJOB_DURATION_HISTOGRAM: DURATION_BOUNDARIES}
    )


def _otlp_attributes(attributes: Mapping[str, str]) -> list[dict[str, Any]]:
    return [{"key": k, "value": {"stringValue": v}} for k, v in attributes.items()]


def _otlp_metric(metric: dict[str, Any], start: str, now: str) -> dict[str, Any]:
    out: dict[str, Any] = {
        "name": metric["name"],
        "description": metric["description"],
        "unit": metric["unit"],
    }
    if metric["kind"] == "sum":
        points = []
        for p in metric["points"]:
            point = {
                "attributes": _otlp_attributes(p["attributes"]),
                "startTimeUnixNano": start,
                "timeUnixNano": now,
            }
            if isinstance(p["value"], int):
                point["asInt"] = str(p["value"])
            else:
                point["asDouble"] = p["value"]
            points.append(point)
        out["sum"] = {
            "dataPoints": points,
            "aggregationTemporality": _CUMULATIVE,
            "isMonotonic": True,
        }
    else:
        out["histogram"] = {
            "dataPoints": [
                {
                    "attributes": _otlp_attributes(p["attributes"]),
                    "startTimeUnixNano": start,
                    "timeUnixNano": now,
                    "count": str(p["count"]),
                    "sum": p["sum"],
                    "min": p["min"],
                    "max": p["max"],
                    "bucketCounts": [str(c) for c in p["bucket_counts"]],
                    "explicitBounds": metric["bounds"],
                }
                for p in metric["points"]
            ],
            "aggregationTemporality": _CUMULATIVE,
        }
    return out


def _otlp_payload(provider: MeterProvider) -> dict[str, Any]:
    start = str(provider.start_time_ns)
    now = str(time.time_ns())
    return {
        "resourceMetrics": [
            {
                "resource": {"attributes": []},
                "scopeMetrics": [
                    {
                        "scope": {"name": scope["scope"]},
                        "metrics": [_otlp_metric(m, start, now) for m in scope["metrics"]],
                    }
                    for scope in provider.collect()
                ],
            }
        ]
    }


def export_metrics(provider: MeterProvider, endpoint: str | None = None) -> bool:
    """Send the provider's data to the collector; log and return False on failure."""
    target = endpoint or provider.endpoint
    base = target if "://" in target else f"http://{target}"
    url = base.rstrip("/") + "/v1/metrics"
    body = json.dumps(_otlp_payload(provider)).encode()
    request = urllib.request.Request(
        url, data=body, method="POST", headers={"Content-Type": "application/json"}
    )
    try:
        with urllib.request.urlopen(request, timeout=EXPORT_TIMEOUT) as response:
            response.read()
    except (urllib.error.URLError, OSError) as err:
        log.error("failed to export metrics: %s", err)
        return False
    return True


def _node_attributes() -> dict[str, str]:
    return {"node name": os.environ.get("NODE_NAME", "")}


def record_metrics_eraser(provider: MeterProvider, total_removed: int) -> None:
    counter = provider.meter(METER_NAME).counter(
        IMAGES_REMOVED_COUNTER, description=IMAGES_REMOVED_DESCRIPTION, unit="1"
    )
    counter.add(int(total_removed), _node_attributes())


def record_metrics_scanner(provider: MeterProvider, total_vulnerable: int) -> None:
    counter = provider.meter(METER_NAME).counter(
        VULNERABLE_IMAGES_COUNTER, description="total vulnerable images", unit="1"
    )
    counter.add(int(total_vulnerable), _node_attributes())


def record_metrics_controller(
    provider: MeterProvider, job_duration: float, pods_completed: int, pods_failed: int
) -> None:
    meter = provider.meter(METER_NAME)
    meter.histogram(
        IMAGEJOB_DURATION_HISTOGRAM, description="duration of imagejob", unit="s"
    ).record(float(job_duration))
    meter.counter(
        PODS_COMPLETED_COUNTER, description="total pods completed", unit="1"
    ).add(int(pods_completed))
    meter.counter(
        PODS_FAILED_COUNTER, description="total pods failed", unit="1"
    ).add(int(pods_failed))
    meter.counter(
        IMAGEJOB_TOTAL_COUNTER, description="total number of imagejobs completed", unit="1"
    ).add(1)