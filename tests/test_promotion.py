import base64
import io

import pytest
from PIL import Image

from ridehub.errors import BlobUploadError, InvalidAttachment
from ridehub.models import User
from ridehub.promotion import LocalBlobStore, ThreadScheduler, TwoPhaseWriter, prepare_image


def test_prepare_image_shrinks_and_previews(make_image):
    asset = prepare_image(make_image(1600, 900), max_side=800, quality=50)

    assert asset.content_type == "image/jpeg"
    with Image.open(io.BytesIO(asset.data)) as img:
        assert img.size == (800, 450)
    prefix = "data:image/jpeg;base64,"
    assert asset.preview.startswith(prefix)
    assert base64.b64decode(asset.preview[len(prefix):]) == asset.data


def test_small_images_are_not_enlarged(make_image):
    asset = prepare_image(make_image(200, 100, fmt="JPEG"), max_side=800, quality=50)
    with Image.open(io.BytesIO(asset.data)) as img:
        assert img.size == (200, 100)


@pytest.mark.parametrize("raw", [b"", b"\x00\x01 definitely not a picture"])
def test_unreadable_attachments(raw):
    with pytest.raises(InvalidAttachment):
        prepare_image(raw, 800, 50)


def test_local_blob_store_writes_under_root(tmp_path):
    blobs = LocalBlobStore(str(tmp_path))
    url = blobs.upload("docs/u1/license.jpg", b"jpeg", "image/jpeg")
    assert url == "/static/docs/u1/license.jpg"
    assert (tmp_path / "docs" / "u1" / "license.jpg").read_bytes() == b"jpeg"


def test_local_blob_store_reports_io_errors(tmp_path):
    blocker = tmp_path / "docs"
    blocker.write_text("a file where a directory should be")
    with pytest.raises(BlobUploadError):
        LocalBlobStore(str(tmp_path)).upload("docs/u1/license.jpg", b"jpeg", "image/jpeg")


def test_writer_without_asset_schedules_nothing(store, blobs, scheduler):
    writer = TwoPhaseWriter(store, blobs, scheduler)

    def durable(session):
        user = User(name="plain")
        session.add(user)
        return user

    user = writer.write(durable, None, lambda u: "unused", None, None)
    assert user.name == "plain"
    assert scheduler.jobs == []


def test_reconcile_failure_is_logged_not_raised(store, blobs, scheduler, make_image, caplog):
    writer = TwoPhaseWriter(store, blobs, scheduler)
    asset = prepare_image(make_image(10, 10), 800, 50)

    def durable(session):
        user = User(name="with-avatar")
        session.add(user)
        return user

    def promoted(session, user, url):
        raise RuntimeError("database went away")

    writer.write(durable, asset, lambda u: f"avatars/{u.id}.jpg", promoted, lambda s, u: None)
    scheduler.run_all()
    assert "could not record upload outcome" in caplog.text


def test_thread_scheduler_runs_jobs_and_drains_on_shutdown():
    pool = ThreadScheduler(max_workers=2)
    done = []
    for i in range(5):
        pool(lambda i=i: done.append(i))
    pool.shutdown()
    assert sorted(done) == [0, 1, 2, 3, 4]
