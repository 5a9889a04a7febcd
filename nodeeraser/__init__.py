"""Work out which container images on a node are unused, and remove them."""

__version__ = "1.1.0b0"

__all__ = [
    "collector",
    "cri",
    "eraser",
    "logger",
    "metrics",
    "scanner_template",
    "trivy",
    "utils",
    "version",
]