from unittest.mock import MagicMock, patch

from bgremover_app.download import append_new_to_name, content_disposition, download_photo


def test_append_new_to_name():
    assert append_new_to_name("cat.png") == "cat-new.png"
    assert append_new_to_name("cat.final.jpg") == "cat-new.final.jpg"
    assert append_new_to_name("cat") == "cat-new"


def test_download_photo_writes_file(tmp_path):
    resp = MagicMock()
    resp.content = b"png-bytes"
    with patch("bgremover_app.download.requests.get", return_value=resp) as get:
        path = download_photo("https://s3/cat-out.png", "cat-new.png", tmp_path / "out")

    get.assert_called_once_with("https://s3/cat-out.png", timeout=(5, 30))
    resp.raise_for_status.assert_called_once()
    assert path == tmp_path / "out" / "cat-new.png"
    assert path.read_bytes() == b"png-bytes"


def test_content_disposition_plain_name():
    assert content_disposition("cat-new.png") == "attachment; filename=\"cat-new.png\"; filename*=UTF-8''cat-new.png"


def test_content_disposition_non_ascii_name_is_latin1_safe():
    header = content_disposition("фото-new.png")

    header.encode("latin-1")
    assert 'filename="____-new.png"' in header
    assert "filename*=UTF-8''%D1%84%D0%BE%D1%82%D0%BE-new.png" in header


def test_content_disposition_escapes_quotes():
    header = content_disposition('my "best" cat-new.png')
    assert 'filename="my _best_ cat-new.png"' in header
    assert "filename*=UTF-8''my%20%22best%22%20cat-new.png" in header
