import base64
import io

from PIL import Image

from rtl_auditor.services.image_ingest import (
    decode_data_url,
    fit_within,
    normalize_image,
    select_upload,
    split_data_url,
)


def _decode(data_url):
    return Image.open(io.BytesIO(decode_data_url(data_url)))


def test_fit_within_caps_the_longer_edge():
    assert fit_within(2000, 1000) == (1600, 800)
    assert fit_within(1000, 2000) == (800, 1600)
    assert fit_within(3000, 3000) == (1600, 1600)
    assert fit_within(800, 600) == (800, 600)


def test_normalize_image_resizes_to_jpeg_data_url(make_image):
    data_url = normalize_image(make_image(2000, 1000))
    assert data_url.startswith("data:image/jpeg;base64,")
    with _decode(data_url) as img:
        assert img.format == "JPEG"
        assert img.size == (1600, 800)


def test_small_images_are_not_enlarged(make_image):
    with _decode(normalize_image(make_image(320, 240))) as img:
        assert img.size == (320, 240)


def test_transparent_images_are_flattened(make_image):
    data_url = normalize_image(make_image(50, 50, color=(0, 0, 0), mode="RGBA"))
    with _decode(data_url) as img:
        assert img.mode == "RGB"
        r, g, b = img.getpixel((25, 25))
        assert min(r, g, b) > 240


def test_non_image_payloads_are_ignored():
    assert normalize_image(b"%PDF-1.4 not an image") is None
    assert normalize_image(b"") is None


def test_data_url_helpers():
    payload = base64.b64encode(b"hello").decode("ascii")
    assert split_data_url(f"data:image/png;base64,{payload}") == ("image/png", payload)
    assert decode_data_url(f"data:image/png;base64,{payload}") == b"hello"
    assert decode_data_url("not a data url") is None


def test_picker_and_drop_only_consider_the_first_file(make_image):
    png = make_image(10, 10)
    assert select_upload([("image/png", png), ("text/plain", b"x")], "picker") == png
    assert select_upload([("text/plain", b"x"), ("image/png", png)], "drop") is None
    assert select_upload([], "picker") is None


def test_paste_takes_first_image_item(make_image):
    png = make_image(10, 10)
    assert select_upload([("text/html", b"<b>"), ("image/png", png)], "paste") == png
    assert select_upload([("text/plain", b"x")], "paste") is None
