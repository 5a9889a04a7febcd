import pytest

from nodeeraser import collector
from nodeeraser.cri import CriContainer, CriImage, ImageSpec


class FakeClient:
    def __init__(self, images, containers=()):
        self.images = list(images)
        self.containers = list(containers)

    def list_images(self):
        return list(self.images)

    def list_containers(self):
        return list(self.containers)


class FailingClient:
    def list_images(self):
        raise RuntimeError("runtime unavailable")

    def list_containers(self):
        return []


def running(image_id):
    return CriContainer(id="c-" + image_id, image=ImageSpec(image=image_id))


def test_all_images_returned_when_nothing_runs():
    client = FakeClient([CriImage(id="image1"), CriImage(id="image2")])
    result = collector.get_images(client)
    assert sorted(img.image_id for img in result) == ["image1", "image2"]


def test_running_images_are_left_out():
    client = FakeClient(
        [CriImage(id="image1"), CriImage(id="image2"), CriImage(id="image3")],
        [running("image2")],
    )
    result = collector.get_images(client)
    assert sorted(img.image_id for img in result) == ["image1", "image3"]


def test_image_with_names_and_digests_appears_once():
    image = CriImage(
        id="sha256:b4034db3",
        repo_tags=["mcr.microsoft.com/oss/kubernetes/kube-proxy:v1.19.11"],
        repo_digests=["mcr.microsoft.com/oss/kubernetes/kube-proxy@sha256:a64d3538"],
    )
    result = collector.get_images(FakeClient([image]))
    assert len(result) == 1
    assert result[0].image_id == "sha256:b4034db3"
    assert result[0].names == ["mcr.microsoft.com/oss/kubernetes/kube-proxy:v1.19.11"]
    assert result[0].digests == ["sha256:a64d3538"]


def test_malformed_digest_is_skipped():
    image = CriImage(id="image1", repo_digests=["no-at-sign"])
    result = collector.get_images(FakeClient([image]))
    assert [img.image_id for img in result] == ["image1"]
    assert result[0].digests == []


def test_excluded_repository_is_filtered():
    images = [
        CriImage(id="image1", repo_tags=["docker.io/library/nginx:latest"]),
        CriImage(id="image2", repo_tags=["ghcr.io/other/app:v1"]),
    ]
    result = collector.get_images(FakeClient(images), {"docker.io/library/*"})
    assert [img.image_id for img in result] == ["image2"]


def test_excluded_by_id():
    images = [CriImage(id="image1"), CriImage(id="image2")]
    result = collector.get_images(FakeClient(images), ["image1"])
    assert [img.image_id for img in result] == ["image2"]


def test_listing_failure_propagates():
    with pytest.raises(RuntimeError):
        collector.get_images(FailingClient())


def test_main_rejects_unknown_runtime():
    assert collector.main(["--runtime", "rkt"]) == collector.GENERAL_ERR


def test_main_rejects_bad_log_level():
    assert collector.main(["--log-level", "verbose"]) == collector.GENERAL_ERR


def test_main_without_connection_fails():
    assert collector.main([]) == collector.GENERAL_ERR