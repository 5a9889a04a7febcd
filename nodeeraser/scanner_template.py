"""The hand-off a custom scanner uses to exchange images with the other containers."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Iterable

from nodeeraser.metrics import configure_metrics, export_metrics, record_metrics_scanner
from nodeeraser.utils import (
    COLLECT_SCAN_PATH,
    ERASE_COMPLETE_MESSAGE,
    ERASE_COMPLETE_SCAN_PATH,
    PIPE_MODE,
    SCAN_ERASE_PATH,
    Image,
    read_collect_scan_pipe,
    write_scan_erase_pipe,
)


@dataclass
class ImageProvider:
    """Receives images from the collector and passes non-compliant ones to the eraser."""

    log: logging.Logger = field(default_factory=lambda: logging.getLogger("nodeeraser.scanner"))
    delete_scan_failed_images: bool = True
    report_metrics: bool = False
    timeout: float | None = None
    collect_scan_path: str = COLLECT_SCAN_PATH
    scan_erase_path: str = SCAN_ERASE_PATH
    erase_complete_scan_path: str = ERASE_COMPLETE_SCAN_PATH

    def receive_images(self) -> list[Image]:
        """Open the completion pipe, then read every image the collector found."""
        try:
            os.mkfifo(self.erase_complete_scan_path, PIPE_MODE)
        except OSError as err:
            self.log.error("failed to create pipe %s: %s", self.erase_complete_scan_path, err)
            raise
        try:
            os.chmod(self.erase_complete_scan_path, 0o666)
        except OSError as err:
            self.log.error(
                "unable to enable pipe for writing %s: %s", self.erase_complete_scan_path, err
            )
            raise
        try:
            return read_collect_scan_pipe(self.collect_scan_path, self.timeout)
        except (OSError, ValueError) as err:
            self.log.error("unable to read images from collect scan pipe: %s", err)
            raise

    def send_images(
        self, non_compliant_images: Iterable[Image], failed_images: Iterable[Image]
    ) -> None:
        """Hand images to the eraser; failed scans go too unless configured otherwise."""
        images = list(non_compliant_images)
        if self.delete_scan_failed_images:
            images.extend(failed_images)
        try:
            write_scan_erase_pipe(images, self.scan_erase_path)
        except OSError as err:
            self.log.error("unable to write non-compliant images to scan erase pipe: %s", err)
            raise

        if self.report_metrics:
            provider = configure_metrics(os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", ""))
            try:
                record_metrics_scanner(provider, len(images))
            except ValueError as err:
                self.log.error("error recording metrics: %s", err)
                raise
            export_metrics(provider)

    def finish(self) -> bool:
        """Wait for the eraser to signal completion.

        Returns True on the completion message and False if the pipe held
        anything else.
        """
        try:
            with open(self.erase_complete_scan_path, encoding="utf-8") as handle:
                data = handle.read()
        except OSError as err:
            self.log.error("failed to read pipe %s: %s", self.erase_complete_scan_path, err)
            raise
        if data != ERASE_COMPLETE_MESSAGE:
            self.log.info("garbage in pipe %s: %r", self.erase_complete_scan_path, data)
            return False
        self.log.info("scanning complete, exiting")
        return True