import time
from datetime import timedelta

import pytest

from nodeeraser import trivy
from nodeeraser.utils import Image


@pytest.mark.parametrize(
    "options, expect_err, map_state",
    [
        ("three,four", True, {}),
        ("one,two", False, {"one": True, "two": True}),
        ("two", False, {"one": False, "two": True}),
    ],
)
def test_parse_comma_separated_options(options, expect_err, map_state):
    m = {"one": False, "two": False}
    if expect_err:
        with pytest.raises(ValueError):
            trivy.parse_comma_separated_options(m, options)
    else:
        trivy.parse_comma_separated_options(m, options)
    for key, value in map_state.items():
        assert m[key] == value


def test_unknown_option_leaves_map_unchanged():
    m = {"one": False, "two": False}
    with pytest.raises(ValueError):
        trivy.parse_comma_separated_options(m, "three")
    assert m == {"one": False, "two": False}


def test_default_config():
    cfg = trivy.default_config()
    assert cfg.cache_dir == "/var/lib/trivy"
    assert cfg.db_repo == "ghcr.io/aquasecurity/trivy-db"
    assert cfg.delete_failed_images is True
    assert cfg.vulnerabilities.ignore_unfixed is True
    assert cfg.vulnerabilities.types == ["os", "library"]
    assert cfg.vulnerabilities.security_checks == ["vuln"]
    assert cfg.vulnerabilities.severities == ["CRITICAL"]
    assert cfg.timeout.total == timedelta(hours=23)
    assert cfg.timeout.per_image == timedelta(hours=1)


def test_load_config_overrides_given_fields(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "apiVersion: eraser.sh/v1alpha1\n"
        "kind: EraserConfig\n"
        "components:\n"
        "  scanner:\n"
        "    config: |\n"
        "      cacheDir: /tmp/cache\n"
        "      vulnerabilities:\n"
        "        severities: [HIGH, CRITICAL]\n"
        "      timeout:\n"
        "        perImage: 30m\n",
        encoding="utf-8",
    )
    cfg = trivy.load_config(str(path))
    assert cfg.cache_dir == "/tmp/cache"
    assert cfg.vulnerabilities.severities == ["HIGH", "CRITICAL"]
    assert cfg.vulnerabilities.ignore_unfixed is True
    assert cfg.vulnerabilities.types == ["os", "library"]
    assert cfg.timeout.per_image == timedelta(minutes=30)
    assert cfg.timeout.total == timedelta(hours=23)


def test_load_config_without_scanner_section_gives_defaults(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("kind: EraserConfig\n", encoding="utf-8")
    assert trivy.load_config(str(path)) == trivy.default_config()


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        trivy.load_config(str(tmp_path / "absent.yaml"))


def test_load_config_bad_duration(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "components:\n  scanner:\n    config: |\n      timeout:\n        total: soon\n",
        encoding="utf-8",
    )
    with pytest.raises(ValueError):
        trivy.load_config(str(path))


def test_init_option_maps_marks_configured_values():
    maps = trivy.init_option_maps(trivy.VulnConfig())
    assert trivy.true_keys(maps.severities) == ["CRITICAL"]
    assert sorted(trivy.true_keys(maps.vuln_types)) == ["library", "os"]
    assert trivy.true_keys(maps.security_checks) == ["vuln"]


def test_init_option_maps_requires_config():
    with pytest.raises(ValueError):
        trivy.init_option_maps(None)


def test_true_keys():
    assert trivy.true_keys({"a": True, "b": False, "c": True}) == ["a", "c"]


class FakeScanner:
    def __init__(self, results):
        self.results = results

    def scan(self, image):
        result = self.results[image.image_id]
        if isinstance(result, Exception):
            raise result
        return result


def test_scan_sorts_images_by_status():
    images = [Image("a"), Image("b"), Image("c"), Image("d")]
    scanner = FakeScanner(
        {
            "a": trivy.ScanStatus.OK,
            "b": trivy.ScanStatus.NON_COMPLIANT,
            "c": trivy.ScanStatus.FAILED,
            "d": RuntimeError("boom"),
        }
    )
    vulnerable, failed, timed_out = trivy.scan(scanner, images)
    assert [img.image_id for img in vulnerable] == ["b"]
    assert [img.image_id for img in failed] == ["c", "d"]
    assert timed_out is False


def test_scan_past_deadline_fails_everything():
    images = [Image("a"), Image("b")]
    scanner = FakeScanner({"a": trivy.ScanStatus.NON_COMPLIANT, "b": trivy.ScanStatus.OK})
    vulnerable, failed, timed_out = trivy.scan(scanner, images, time.monotonic() - 1)
    assert vulnerable == []
    assert [img.image_id for img in failed] == ["a", "b"]
    assert timed_out is True