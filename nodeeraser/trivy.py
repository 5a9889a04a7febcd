"""Configuration and scan loop of the vulnerability scanner component."""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass, field
from datetime import timedelta
from enum import IntEnum
from typing import Any, Iterable, Mapping, Protocol

import yaml

from nodeeraser.utils import Image

SEVERITY_CRITICAL = "CRITICAL"
SEVERITY_HIGH = "HIGH"
SEVERITY_MEDIUM = "MEDIUM"
SEVERITY_LOW = "LOW"
SEVERITY_UNKNOWN = "UNKNOWN"

VULN_TYPE_OS = "os"
VULN_TYPE_LIBRARY = "library"

SECURITY_CHECK_VULN = "vuln"
SECURITY_CHECK_CONFIG = "config"
SECURITY_CHECK_SECRET = "secret"

log = logging.getLogger("nodeeraser.scanner.trivy")


class ScanStatus(IntEnum):
    FAILED = 0
    NON_COMPLIANT = 1
    OK = 2


@dataclass
class VulnConfig:
    ignore_unfixed: bool = True
    types: list[str] = field(default_factory=lambda: [VULN_TYPE_OS, VULN_TYPE_LIBRARY])
    security_checks: list[str] = field(default_factory=lambda: [SECURITY_CHECK_VULN])
    severities: list[str] = field(default_factory=lambda: [SEVERITY_CRITICAL])


@dataclass
class TimeoutConfig:
    total: timedelta = timedelta(hours=23)
    per_image: timedelta = timedelta(hours=1)


@dataclass
class Config:
    cache_dir: str = "/var/lib/trivy"
    db_repo: str = "ghcr.io/aquasecurity/trivy-db"
    delete_failed_images: bool = True
    vulnerabilities: VulnConfig = field(default_factory=VulnConfig)
    timeout: TimeoutConfig = field(default_factory=TimeoutConfig)


def _all_false(*keys: str) -> dict[str, bool]:
    return dict.fromkeys(keys, False)


@dataclass
class OptionMaps:
    """Recognised options, each marked True when the configuration selects it."""

    severities: dict[str, bool] = field(
        default_factory=lambda: _all_false(
            SEVERITY_CRITICAL, SEVERITY_HIGH, SEVERITY_MEDIUM, SEVERITY_LOW, SEVERITY_UNKNOWN
        )
    )
    vuln_types: dict[str, bool] = field(
        default_factory=lambda: _all_false(VULN_TYPE_OS, VULN_TYPE_LIBRARY)
    )
    security_checks: dict[str, bool] = field(
        default_factory=lambda: _all_false(
            SECURITY_CHECK_VULN, SECURITY_CHECK_SECRET, SECURITY_CHECK_CONFIG
        )
    )


def default_config() -> Config:
    """Return the scanner configuration used when none is supplied."""
    return Config()


_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def _parse_duration(value: Any, key: str) -> timedelta:
    """Parse ``1h30m``-style strings; plain numbers are taken as seconds."""
    if isinstance(value, bool):
        raise ValueError(f"{key}: invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    if not isinstance(value, str):
        raise ValueError(f"{key}: invalid duration {value!r}")
    text = value.strip()
    sign = 1.0
    if text[:1] in "+-" and text:
        sign = -1.0 if text[0] == "-" else 1.0
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f"{key}: invalid duration {value!r}")
    seconds = 0.0
    pos = 0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"{key}: invalid duration {value!r}")
    return timedelta(seconds=sign * seconds)


def _as_str(value: Any, key: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _as_bool(value: Any, key: str) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be a boolean")
    return value


def _as_str_list(value: Any, key: str) -> list[str]:
    if not isinstance(value, list) or not all(isinstance(x, str) for x in value):
        raise ValueError(f"{key} must be a list of strings")
    return list(value)


def _as_mapping(value: Any, key: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ValueError(f"{key} must be a mapping")
    return value


def _apply_vulnerabilities(vuln: VulnConfig, data: Mapping[str, Any]) -> None:
    for key, value in data.items():
        if value is None:
            continue
        if key == "ignoreUnfixed":
            vuln.ignore_unfixed = _as_bool(value, key)
        elif key == "types":
            vuln.types = _as_str_list(value, key)
        elif key == "securityChecks":
            vuln.security_checks = _as_str_list(value, key)
        elif key == "severities":
            vuln.severities = _as_str_list(value, key)


def _apply_timeout(timeout: TimeoutConfig, data: Mapping[str, Any]) -> None:
    for key, value in data.items():
        if value is None:
            continue
        if key == "total":
            timeout.total = _parse_duration(value, key)
        elif key == "perImage":
            timeout.per_image = _parse_duration(value, key)


def _apply_config(cfg: Config, data: Mapping[str, Any]) -> None:
    for key, value in data.items():
        if value is None:
            continue
        if key == "cacheDir":
            cfg.cache_dir = _as_str(value, key)
        elif key == "dbRepo":
            cfg.db_repo = _as_str(value, key)
        elif key == "deleteFailedImages":
            cfg.delete_failed_images = _as_bool(value, key)
        elif key == "vulnerabilities":
            _apply_vulnerabilities(cfg.vulnerabilities, _as_mapping(value, key))
        elif key == "timeout":
            _apply_timeout(cfg.timeout, _as_mapping(value, key))


def _load_yaml(text: str) -> Mapping[str, Any]:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as err:
        raise ValueError(f"invalid YAML: {err}") from err
    if data is None:
        return {}
    return _as_mapping(data, "document")


def load_config(filename: str) -> Config:
    """Read the eraser configuration file and return the scanner settings in it.

    Settings absent from the file keep their defaults.
    """
    with open(filename, encoding="utf-8") as handle:
        eraser_config = _load_yaml(handle.read())

    components = eraser_config.get("components") or {}
    scanner = _as_mapping(components, "components").get("scanner") or {}
    scanner_text = _as_mapping(scanner, "scanner").get("config")

    cfg = default_config()
    if scanner_text is not None:
        _apply_config(cfg, _load_yaml(_as_str(scanner_text, "config")))
    return cfg


def parse_comma_separated_options(options: dict[str, bool], comma_separated_list: str) -> None:
    """Mark each listed option True in ``options``.

    Raises :class:`ValueError` at the first item that is not already a key.
    """
    for item in comma_separated_list.split(","):
        if item not in options:
            raise ValueError(f"'{item}' was not one of {list(options)!r}")
        options[item] = True


def init_option_maps(vuln_config: VulnConfig | None) -> OptionMaps:
    """Build the option maps with the configured severities, types and checks set."""
    if vuln_config is None:
        raise ValueError("valid configuration required")
    maps = OptionMaps()
    for selected, target in (
        (vuln_config.severities, maps.severities),
        (vuln_config.types, maps.vuln_types),
        (vuln_config.security_checks, maps.security_checks),
    ):
        for key in selected:
            target[key] = True
    return maps


def true_keys(options: Mapping[str, bool]) -> list[str]:
    """Return the keys whose value is True."""
    return [key for key, selected in options.items() if selected]


class _Scanner(Protocol):
    def scan(self, image: Image) -> ScanStatus: ...


def scan(
    scanner: _Scanner, all_images: Iterable[Image], deadline: float | None = None
) -> tuple[list[Image], list[Image], bool]:
    """Scan each image in turn.

    ``deadline`` is a :func:`time.monotonic` value; once it passes, every
    image not yet scanned counts as failed. Returns the vulnerable images,
    the failed images and whether the deadline was reached.
    """
    vulnerable: list[Image] = []
    failed: list[Image] = []
    remaining = iter(all_images)
    for image in remaining:
        if deadline is not None and time.monotonic() >= deadline:
            failed.append(image)
            failed.extend(remaining)
            log.error("image scan total timeout exceeded")
            return vulnerable, failed, True
        try:
            status = scanner.scan(image)
        except Exception as err:
            failed.append(image)
            log.error("scan failed: %s", err)
            continue
        if status == ScanStatus.NON_COMPLIANT:
            log.info("vulnerable image found: %s", image.image_id)
            vulnerable.append(image)
        elif status == ScanStatus.FAILED:
            failed.append(image)
    return vulnerable, failed, False