from meshcall import MediaCapture


async def test_no_source_is_receive_only():
    media = MediaCapture(source="")
    assert await media.acquire() == []
    assert media.permission_error is None
    assert media.tracks_for_session() == []


async def test_unavailable_device_records_error():
    media = MediaCapture(source="/nonexistent/camera0", fmt=None, options={})
    assert await media.acquire() == []
    assert media.permission_error.startswith("Could not access /nonexistent/camera0")
    assert media.tracks_for_session() == []


def test_release_without_capture():
    media = MediaCapture(source="")
    media.release()
    assert media.tracks == []
