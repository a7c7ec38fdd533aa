"""
Checkout Service — 設定

環境変数は起動時に一度だけ読み込み、Settings として
ゲートウェイクライアントや署名検証器のコンストラクタに渡す。
コアロジックの中で os.environ を直接参照しないこと。
"""

import os
from collections.abc import Mapping

from pydantic import BaseModel, SecretStr


class Settings(BaseModel):
    razorpay_key_id: str
    razorpay_key_secret: SecretStr
    database_url: str
    redis_url: str = "redis://localhost:6379"
    gateway_base_url: str = "https://api.razorpay.com/v1"
    gateway_timeout: float = 10.0
    currency: str = "INR"
    allowed_origin: str = "*"
    port: int = 5001
    log_level: str = "INFO"
    create_schema: bool = False

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        """環境変数から Settings を組み立てる。必須項目が無ければ KeyError。"""
        env = os.environ if environ is None else environ
        return cls(
            razorpay_key_id=env["RAZORPAY_KEY_ID"],
            razorpay_key_secret=env["RAZORPAY_KEY_SECRET"],
            database_url=env["DATABASE_URL"],
            redis_url=env.get("REDIS_URL", "redis://localhost:6379"),
            gateway_base_url=env.get("GATEWAY_BASE_URL", "https://api.razorpay.com/v1"),
            gateway_timeout=float(env.get("GATEWAY_TIMEOUT", "10")),
            currency=env.get("CURRENCY", "INR"),
            allowed_origin=env.get("FRONTEND_ORIGIN", "*"),
            port=int(env.get("PORT", "5001")),
            log_level=env.get("LOG_LEVEL", "INFO"),
            create_schema=env.get("CREATE_SCHEMA", "").lower() in ("1", "true", "yes"),
        )
