"""
Checkout Service — 署名検証

クライアントが送ってくる「支払い完了」の主張は、ゲートウェイが
発行した HMAC-SHA256 署名で検証するまで信用しない。

    signature = HMAC-SHA256(secret, order_ref + "|" + payment_ref) の hex

比較は必ず hmac.compare_digest で行う（== はタイミング攻撃になる）。
"""

import hashlib
import hmac


def sign(order_ref: str, payment_ref: str, secret: str) -> str:
    message = f"{order_ref}|{payment_ref}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify(order_ref: str, payment_ref: str, claimed_signature: str, secret: str) -> bool:
    expected = sign(order_ref, payment_ref, secret)
    return hmac.compare_digest(expected.encode(), claimed_signature.encode())


class SignatureVerifier:
    """設定から受け取った共有シークレットで署名を検証する。"""

    def __init__(self, secret: str):
        self._secret = secret

    def verify(self, order_ref: str, payment_ref: str, claimed_signature: str) -> bool:
        return verify(order_ref, payment_ref, claimed_signature, self._secret)
