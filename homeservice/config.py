from pydantic import BaseModel
import os
from dotenv import load_dotenv
load_dotenv()  # carga el archivo .env de la raíz

class Settings(BaseModel):
    app_name: str = os.getenv("APP_NAME", "HomeService")
    env: str = os.getenv("APP_ENV", "dev")
    mongodb_uri: str = os.getenv("MONGODB_URI", "mongodb://localhost:27017")
    db_name: str = os.getenv("DB_NAME", "homeservice")
    # Transacciones multi-documento: requieren replica set
    mongo_transactions: bool = os.getenv("MONGO_TRANSACTIONS", "0").lower() in ("1", "true", "yes")
    jwt_secret: str = os.getenv("JWT_SECRET", "change-me")
    jwt_expires_hours: int = int(os.getenv("JWT_EXPIRES_HOURS", "8"))
    frontend_base_url: str = os.getenv("FRONTEND_BASE_URL", "http://localhost:4200")
    billing_provider: str = os.getenv("BILLING_PROVIDER", "mock").lower()
    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    webhook_secret: str = os.getenv("WEBHOOK_SECRET", "whsec_dev")

    # Liquidación
    commission_rate: float = float(os.getenv("COMMISSION_RATE", "0.18"))
    vat_percentage: float = float(os.getenv("VAT_PERCENTAGE", "15"))
    default_currency: str = os.getenv("DEFAULT_CURRENCY", "SAR")
    payment_lock_seconds: int = int(os.getenv("PAYMENT_LOCK_SECONDS", "60"))
    # Un webhook a medias se puede reprocesar pasado este tiempo
    webhook_lease_seconds: int = int(os.getenv("WEBHOOK_LEASE_SECONDS", "300"))


_settings: Settings | None = None
def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
