import qrcode
import qrcode.image.svg


def make_login_qr_svg_bytes(lnurl: str) -> bytes:
    # Uppercase bech32 lets the QR encoder use alphanumeric mode (denser code).
    img = qrcode.make(lnurl.upper(), image_factory=qrcode.image.svg.SvgImage)
    return img.to_string()  # bytes, no args
