"""Collects the images on a node that no container uses and hands them on."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Any, Callable, Iterable

from nodeeraser.cri import new_client_with_fallback
from nodeeraser.logger import DEFAULT_LEVEL, SUPPORTED_LEVELS, configure
from nodeeraser.utils import (
    COLLECT_SCAN_PATH,
    ERASE_COMPLETE_COLLECT_PATH,
    ERASE_COMPLETE_MESSAGE,
    PIPE_MODE,
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
    write_scan_erase_pipe,
)

GENERAL_ERR = 1

log = logging.getLogger("nodeeraser.collector")


def get_images(client: Any, excluded: Iterable[str] | None = None) -> list[Image]:
    """Return every image that no container is using and that is not excluded.

    Each image appears once, however many names and digests refer to it.
    Failures to list images or containers propagate.
    """
    excluded = set(excluded or ())
    records = [img for img in client.list_images() if img is not None]
    all_images, id_to_image, errors = build_image_index(records)
    for err in errors:
        log.error("error processing digest: %s", err)

    containers = [c for c in client.list_containers() if c is not None]
    running = get_running_images(containers, id_to_image)
    non_running = get_non_running_images(running, all_images, id_to_image)

    final: list[Image] = []
    checked: set[str] = set()
    for image_id in non_running.values():
        if image_id in checked:
            continue
        checked.add(image_id)
        known = id_to_image.get(image_id)
        image = Image(
            image_id=image_id,
            names=list(known.names) if known else [],
            digests=list(known.digests) if known else [],
        )
        if not is_excluded(excluded, image.image_id, id_to_image):
            final.append(image)
    return final


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="collector", description=__doc__)
    parser.add_argument("--runtime", default=RUNTIME_CONTAINERD, help="container runtime")
    parser.add_argument(
        "--scan-disabled",
        action="store_true",
        help="send images straight to the eraser because no scanner runs",
    )
    parser.add_argument(
        "--log-level",
        default=DEFAULT_LEVEL,
        help="log verbosity level; one of " + ", ".join(SUPPORTED_LEVELS),
    )
    return parser


def _run(argv: list[str] | None, connect: Callable[[str], Any] | None) -> int:
    args = _parser().parse_args(argv)
    try:
        configure(args.log_level)
    except ValueError as err:
        print(f"Error setting up logger: {err}", file=sys.stderr)
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
        final_images = get_images(client, excluded)
    except Exception as err:
        log.error("failed to list all images: %s", err)
        return GENERAL_ERR
    log.info("images collected: %s", [img.to_dict() for img in final_images])

    path = SCAN_ERASE_PATH if args.scan_disabled else COLLECT_SCAN_PATH
    try:
        write_scan_erase_pipe(final_images, path)
    except OSError as err:
        log.error("failed to write to pipe %s: %s", path, err)
        return GENERAL_ERR

    try:
        os.mkfifo(ERASE_COMPLETE_COLLECT_PATH, PIPE_MODE)
        with open(ERASE_COMPLETE_COLLECT_PATH, encoding="utf-8") as handle:
            data = handle.read()
    except OSError as err:
        log.error("failed to read pipe %s: %s", ERASE_COMPLETE_COLLECT_PATH, err)
        return GENERAL_ERR

    if data != ERASE_COMPLETE_MESSAGE:
        log.info("garbage in pipe %s: %r", ERASE_COMPLETE_COLLECT_PATH, data)
        return GENERAL_ERR
    return 0


def main(argv: list[str] | None = None) -> int:
    """Run the collector and return the process exit status."""
    return _run(argv, None)


if __name__ == "__main__":
    sys.exit(main())