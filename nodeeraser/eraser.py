"""Removes images that no container uses, from an image list or a scanner's findings."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from typing import Any, Callable, Iterable

from nodeeraser.cri import new_client_with_fallback
from nodeeraser.logger import DEFAULT_LEVEL, SUPPORTED_LEVELS, configure
from nodeeraser.metrics import configure_metrics, export_metrics, record_metrics_eraser
from nodeeraser.utils import (
    ERASE_COMPLETE_COLLECT_PATH,
    ERASE_COMPLETE_MESSAGE,
    ERASE_COMPLETE_SCAN_PATH,
    RUNTIME_CONTAINERD,
    RUNTIME_SOCKET_PATHS,
    SCAN_ERASE_PATH,
    Image,
    build_image_index,
    get_address,
    get_non_running_images,
    get_running_images,
    is_excluded,
    parse_excluded,
    parse_image_list,
)

GENERAL_ERR = 1
PRUNE = "*"

log = logging.getLogger("nodeeraser.eraser")


def remove_images(client: Any, target_images: Iterable[str], excluded: Iterable[str] | None = None) -> int:
    """Delete the targeted images that no container is using; return how many went.

    A target of ``*`` removes every non-running, non-excluded image. Failures
    to list images or containers propagate; a failed deletion is logged and
    skipped.
    """
    excluded = set(excluded or ())
    records = [img for img in client.list_images() if img is not None]
    all_images, id_to_image, errors = build_image_index(records)
    for err in errors:
        log.error("error processing digest: %s", err)

    containers = [c for c in client.list_containers() if c is not None]
    running = get_running_images(containers, id_to_image)
    non_running = get_non_running_images(running, all_images, id_to_image)

    log.debug("map of non-running images: %s", non_running)
    log.debug("map of running images: %s", running)
    log.debug("map of digest to image name(s): %s", id_to_image)

    removed = 0
    prune = False
    deleted: set[str] = set()

    for target in target_images:
        if target == PRUNE:
            prune = True
            continue

        if target in non_running:
            image_id = non_running[target]
            if is_excluded(excluded, target, id_to_image):
                log.info("image is excluded: given=%s imageID=%s", target, image_id)
                continue
            try:
                client.delete_image(image_id)
            except Exception as err:
                log.error("error removing image: given=%s imageID=%s: %s", target, image_id, err)
                continue
            deleted.add(target)
            log.info("removed image: given=%s imageID=%s", target, image_id)
            removed += 1
            continue

        if target in running:
            log.info("image is running: given=%s imageID=%s", target, running[target])
            continue

        log.info("image is not on node: given=%s", target)

    if prune:
        success = True
        for image_id in non_running.values():
            if image_id in deleted:
                continue
            if is_excluded(excluded, image_id, id_to_image):
                log.info("image is excluded: imageID=%s", image_id)
                continue
            try:
                client.delete_image(image_id)
            except Exception as err:
                success = False
                log.error("error removing image: imageID=%s: %s", image_id, err)
                continue
            log.info("removed image: digest=%s", image_id)
            deleted.add(image_id)
            removed += 1
        log.info("prune successful" if success else "error during prune")

    return removed


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="eraser", description=__doc__)
    parser.add_argument("--runtime", default=RUNTIME_CONTAINERD, help="container runtime")
    parser.add_argument("--imagelist", default="", help="path of the image list file")
    parser.add_argument(
        "--log-level",
        default=DEFAULT_LEVEL,
        help="log verbosity level; one of " + ", ".join(SUPPORTED_LEVELS),
    )
    return parser


def _wait_for_scanned_images(path: str) -> list[str]:
    while True:
        try:
            handle = open(path, "rb")
            break
        except FileNotFoundError:
            time.sleep(1.0)
    with handle:
        data = json.loads(handle.read())
    if not isinstance(data, list):
        raise ValueError("non-compliant image data must be a JSON array")
    return [Image.from_dict(item).image_id for item in data]


def _signal_complete(path: str) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(ERASE_COMPLETE_MESSAGE)


def _run(argv: list[str] | None, connect: Callable[[str], Any] | None) -> int:
    args = _parser().parse_args(argv)
    try:
        configure(args.log_level)
    except ValueError as err:
        print(f"error setting up logger: {err}", file=sys.stderr)
        return GENERAL_ERR

    socket_path = RUNTIME_SOCKET_PATHS.get(args.runtime)
    if socket_path is None:
        log.error("unsupported runtime: %s", args.runtime)
        return GENERAL_ERR

    if connect is None:
        log.error("failed to get image client: no runtime connection available")
        return GENERAL_ERR
    try:
        client = new_client_with_fallback(connect(get_address(socket_path)))
    except Exception as err:
        log.error("failed to get image client: %s", err)
        return GENERAL_ERR

    if args.imagelist:
        try:
            imagelist = parse_image_list(args.imagelist)
        except (OSError, ValueError) as err:
            log.error("failed to parse image list file: %s", err)
            return GENERAL_ERR
        log.info("successfully parsed image list file")
    else:
        try:
            imagelist = _wait_for_scanned_images(SCAN_ERASE_PATH)
        except (OSError, ValueError) as err:
            log.error("error reading non-compliant images: %s", err)
            return GENERAL_ERR
        log.info("successfully created imagelist from scanned non-compliant images")

    excluded: set[str] = set()
    try:
        excluded = parse_excluded(".")
    except FileNotFoundError:
        log.info("configmaps for exclusion do not exist")
    except (OSError, ValueError) as err:
        log.error("failed to parse exclusion list: %s", err)
        return GENERAL_ERR
    if not excluded:
        log.info("no images to exclude")

    try:
        removed = remove_images(client, imagelist, excluded)
    except Exception as err:
        log.error("failed to remove images: %s", err)
        return GENERAL_ERR

    endpoint = os.environ.get("OTEL_EXPORTER_OTLP_ENDPOINT", "")
    if endpoint:
        provider = configure_metrics(endpoint)
        try:
            record_metrics_eraser(provider, removed)
        except ValueError as err:
            log.error("error recording metrics: %s", err)
        export_metrics(provider)

    if not args.imagelist:
        try:
            _signal_complete(ERASE_COMPLETE_COLLECT_PATH)
        except OSError as err:
            log.error("unable to write to pipe %s: %s", ERASE_COMPLETE_COLLECT_PATH, err)
            return GENERAL_ERR
        try:
            _signal_complete(ERASE_COMPLETE_SCAN_PATH)
        except FileNotFoundError:
            return 0
        except OSError as err:
            log.error("unable to write to pipe %s: %s", ERASE_COMPLETE_SCAN_PATH, err)
            return GENERAL_ERR

    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the eraser and return the process exit status."""
    return _run(argv, None)


if __name__ == "__main__":
    sys.exit(main())