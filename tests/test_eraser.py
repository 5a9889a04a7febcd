import json

import pytest

from nodeeraser.cri import CriContainer, CriImage, ImageSpec
from nodeeraser.eraser import main, remove_images


class ImageNotRemovedError(Exception):
    pass


class ImageEmptyError(Exception):
    pass


class FakeClient:
    def __init__(self, images=(), containers=()):
        self.images = list(images)
        self.containers = list(containers)

    def list_images(self):
        return list(self.images)

    def list_containers(self):
        return list(self.containers)

    def delete_image(self, image):
        if not image:
            raise ImageEmptyError("unable to remove empty image")
        for index, value in enumerate(self.images):
            if image == value.id or image in value.repo_tags or image in value.repo_digests:
                del self.images[index]
                return
        raise ImageNotRemovedError("image not removed")


IMAGE1 = CriImage(
    id="sha256:ccd78eb0f420877b5513f61bf470dd379d8e8672671115d65c6f69d1c4261f87",
    repo_tags=["mcr.microsoft.com/aks/acc/sgx-webhook:0.6"],
)
IMAGE2 = CriImage(
    id="sha256:d153e49438bdcf34564a4e6b4f186658ca1168043be299106f8d6048e8617574",
    repo_tags=["mcr.microsoft.com/containernetworking/azure-npm:v1.2.1"],
)
IMAGE3 = CriImage(
    id="sha256:8adbfa37c6320849612a5ade36bbb94ff03229a0587f026dd1e0561f196824ce",
    repo_tags=["mcr.microsoft.com/oss/kubernetes/ip-masq-agent:v2.5.0.4"],
)
IMAGE4 = CriImage(
    id="sha256:b4034db328056e7f4c27ab76a5b9811b0f5eaa99565194cf7c6446781e772043",
    repo_tags=["mcr.microsoft.com/oss/kubernetes/kube-proxy:v1.19.11-hotfix.20210526"],
    repo_digests=[
        "mcr.microsoft.com/oss/kubernetes/kube-proxy"
        "@sha256:a64d3538b72905b07356881314755b02db3675ff47ee2bcc49dd7be856e285d5"
    ],
)
IMAGE5 = CriImage(
    id="sha256:fd46ec1af6de89db1714a243efa1e35c4408f5a5b9df9c653dd70db1ee95522b",
    repo_tags=[],
    repo_digests=[
        "docker.io/aldaircoronel/remove_images"
        "@sha256:d93d3d3073797258ef06c39e2dce9782c5c8a2315359337448e140c14423928e"
    ],
)
CONTAINER1 = CriContainer(
    id="7eb07fbb43e86a6114fb3b382339176117bc377cff89d5466210cbf2b101d4cb",
    image=ImageSpec(image=IMAGE3.id),
    image_ref=IMAGE3.id,
)
CONTAINER2 = CriContainer(
    id="36080589120ee72504484c0f407568c49531021c751bc55b3ccd5af03b8af2cb",
    image=ImageSpec(image=IMAGE4.id),
    image_ref=IMAGE4.id,
)


def _sample_client():
    return FakeClient(
        images=[IMAGE1, IMAGE2, IMAGE3, IMAGE4, IMAGE5], containers=[CONTAINER1, CONTAINER2]
    )


CASES = {
    "No images at all": dict(running=[], cached=[], remove=[], expect=[]),
    "Images to remove but no images on node": dict(
        running=[], cached=[], remove=["image1", "image2"], expect=[]
    ),
    "No images to remove but images on node": dict(
        running=[], cached=["image1", "image2"], remove=[], expect=["image1", "image2"]
    ),
    "Remove subset of images": dict(
        running=[], cached=["image1", "image2", "image3"],
        remove=["image1", "image2"], expect=["image3"],
    ),
    "Remove all images explicitly": dict(
        running=[], cached=["image1", "image2", "image3"],
        remove=["image1", "image2", "image3"], expect=[],
    ),
    "Remove single running image": dict(
        running=["image1"], cached=[], remove=["image1"], expect=["image1"]
    ),
    "Remove multiple running images": dict(
        running=["image2", "image3"], cached=["image1"],
        remove=["image2", "image3"], expect=["image1", "image2", "image3"],
    ),
    "Remove all images by prune": dict(
        running=[], cached=["image1", "image2", "image3"], remove=["*"], expect=[]
    ),
    "Prune and explicit image running=false": dict(
        running=[], cached=["image1", "image2", "image3"], remove=["*", "image2"], expect=[]
    ),
    "Prune and explicit image running=true": dict(
        running=["image1"], cached=["image2", "image3"],
        remove=["*", "image2"], expect=["image1"],
    ),
}


@pytest.mark.parametrize("case", list(CASES.values()), ids=list(CASES))
def test_remove_images(case):
    client = FakeClient()
    for name in case["running"]:
        client.containers.append(CriContainer(image=ImageSpec(image=name)))
        client.images.append(CriImage(id=name))
    for name in case["cached"]:
        if name not in case["running"]:
            client.images.append(CriImage(id=name))

    remove_images(client, case["remove"], set())

    remaining = {img.id for img in client.images}
    assert remaining == set(case["expect"])
    for name in case["remove"]:
        if name not in case["running"]:
            assert name not in remaining


def test_remove_by_tag():
    client = _sample_client()
    assert remove_images(client, ["mcr.microsoft.com/containernetworking/azure-npm:v1.2.1"]) == 1
    assert [img.id for img in client.images] == [IMAGE1.id, IMAGE3.id, IMAGE4.id, IMAGE5.id]


def test_remove_by_digest():
    client = _sample_client()
    digest = "sha256:d93d3d3073797258ef06c39e2dce9782c5c8a2315359337448e140c14423928e"
    assert remove_images(client, [digest]) == 1
    assert IMAGE5 not in client.images


def test_running_image_kept_by_digest():
    client = _sample_client()
    digest = "sha256:a64d3538b72905b07356881314755b02db3675ff47ee2bcc49dd7be856e285d5"
    assert remove_images(client, [digest, IMAGE3.id]) == 0
    assert len(client.images) == 5


def test_prune_respects_exclusions():
    client = _sample_client()
    removed = remove_images(client, ["*"], {"mcr.microsoft.com/*"})
    assert removed == 1
    assert [img.id for img in client.images] == [IMAGE1.id, IMAGE2.id, IMAGE3.id, IMAGE4.id]


def test_explicit_target_excluded():
    client = _sample_client()
    assert remove_images(client, [IMAGE1.id], {IMAGE1.id}) == 0
    assert IMAGE1 in client.images


def test_delete_failure_is_skipped():
    class Failing(FakeClient):
        def delete_image(self, image):
            raise RuntimeError("runtime unavailable")

    client = Failing(images=[CriImage(id="image1")])
    assert remove_images(client, ["image1", "*"]) == 0
    assert [img.id for img in client.images] == ["image1"]


def test_list_failure_propagates():
    class Broken(FakeClient):
        def list_images(self):
            raise RuntimeError("cannot list")

    with pytest.raises(RuntimeError, match="cannot list"):
        remove_images(Broken(), ["image1"])


@pytest.fixture
def workdir(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("OTEL_EXPORTER_OTLP_ENDPOINT", raising=False)
    return tmp_path


@pytest.mark.parametrize(
    "argv",
    [
        ["--runtime", "podman", "--imagelist", "list.json"],
        ["--log-level", "verbose", "--imagelist", "list.json"],
        ["--imagelist", "missing.json"],
    ],
)
def test_main_errors(workdir, argv):
    assert main(argv) == 1


def test_main_without_connection(workdir):
    (workdir / "list.json").write_text(json.dumps([]))
    assert main(["--imagelist", str(workdir / "list.json")]) == 1