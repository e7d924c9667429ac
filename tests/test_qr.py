import base64

from societix.qr import qr_data_url, qr_filename, qr_png


def test_png_bytes():
    png = qr_png("SS-ABCD2345")
    assert png.startswith(b"\x89PNG\r\n\x1a\n")


def test_data_url():
    url = qr_data_url("SS-ABCD2345")
    prefix = "data:image/png;base64,"
    assert url.startswith(prefix)
    assert base64.b64decode(url[len(prefix):]) == qr_png("SS-ABCD2345")


def test_codes_give_different_images():
    assert qr_png("SS-ABCD2345") != qr_png("SS-EFGH6789")


def test_filename():
    assert qr_filename("SS-ABCD2345") == "ticket-SS-ABCD2345.png"
