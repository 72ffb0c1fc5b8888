# restopay.config
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
import os
from dotenv import load_dotenv

# Calculer le chemin du projet puis charger .env de manière explicite
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH, override=True)

"""
Configuration centrale du backend paiements.

- Charge le fichier .env à la racine du projet (BASE_DIR/.env)
- Normalise et expose les secrets/URLs (Supabase, PayPal, Stripe, Paymob), sécurité cookies, CORS/hosts
- Construit des objets de configuration explicites (Settings) injectés dans chaque passerelle
"""

def _clean_env(v: str) -> str:
    """
    Nettoie une valeur d'environnement:
    - supprime les espaces et guillemets (simples, doubles) et backticks
    - retourne toujours une chaîne (jamais None)
    """
    return (v or "").strip().strip("'").strip('"').strip("`")

def _env_float(name: str, default: float) -> float:
    try:
        return float(_clean_env(os.getenv(name)) or default)
    except ValueError:
        return default

def _env_int(name: str, default: int) -> int:
    try:
        return int(_clean_env(os.getenv(name)) or default)
    except ValueError:
        return default

# Supabase: URLs et clés (public/anon/service)
SUPABASE_URL = _clean_env(os.getenv("SUPABASE_URL") or "")
SUPABASE_ANON = _clean_env(os.getenv("SUPABASE_ANON_KEY") or os.getenv("SUPABASE_KEY") or "")
SUPABASE_SERVICE_KEY = _clean_env(os.getenv("SUPABASE_SERVICE_KEY") or "")

if SUPABASE_URL and not SUPABASE_URL.startswith("http"):
    SUPABASE_URL = "https://" + SUPABASE_URL
if SUPABASE_URL.endswith("/"):
    SUPABASE_URL = SUPABASE_URL.rstrip("/")

# Cookies / sécurité
COOKIE_SECURE = (os.getenv("COOKIE_SECURE", "false").lower() == "true")

# CORS (dev)
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "localhost,127.0.0.1,testserver").split(",") if h.strip()]

BASE_URL = _clean_env(os.getenv("BASE_URL") or "http://localhost:8000")

# Stockage des factures: "supabase" (prod) ou "memory" (dev/tests)
PAYMENTS_STORE = _clean_env(os.getenv("PAYMENTS_STORE") or "supabase").lower()
PAYMENTS_CURRENCY = _clean_env(os.getenv("PAYMENTS_CURRENCY") or "USD").upper()

# PayPal (flux redirection)
PAYPAL_MODE = _clean_env(os.getenv("PAYPAL_MODE") or "sandbox").lower()
PAYPAL_CLIENT_ID = _clean_env(os.getenv("PAYPAL_CLIENT_ID") or "")
PAYPAL_CLIENT_SECRET = _clean_env(os.getenv("PAYPAL_CLIENT_SECRET") or "")
PAYPAL_WEBHOOK_ID = _clean_env(os.getenv("PAYPAL_WEBHOOK_ID") or "")
PAYPAL_BRAND_NAME = _clean_env(os.getenv("PAYPAL_BRAND_NAME") or "Mini Restaurant")

# Stripe (flux carte inline): clés et secret webhook
STRIPE_PUBLIC_KEY = _clean_env(os.getenv("STRIPE_PUBLIC_KEY") or "")
STRIPE_SECRET_KEY = _clean_env(os.getenv("STRIPE_SECRET_KEY") or "")
STRIPE_WEBHOOK_SECRET = _clean_env(os.getenv("STRIPE_WEBHOOK_SECRET") or "")

# Paymob (flux iframe / wallet, Égypte)
PAYMOB_API_KEY = _clean_env(os.getenv("PAYMOB_API_KEY") or "")
PAYMOB_INTEGRATION_ID = _clean_env(os.getenv("PAYMOB_INTEGRATION_ID") or "")
PAYMOB_WALLET_INTEGRATION_ID = _clean_env(
    os.getenv("PAYMOB_WALLET_INTEGRATION_ID") or os.getenv("PAYMOB_INSTAPAY_INTEGRATION_ID") or ""
)
PAYMOB_IFRAME_ID = _clean_env(os.getenv("PAYMOB_IFRAME_ID") or "")
PAYMOB_HMAC_SECRET = _clean_env(os.getenv("PAYMOB_HMAC_SECRET") or "")
PAYMOB_BASE_URL = _clean_env(os.getenv("PAYMOB_BASE_URL") or "https://accept.paymob.com/api")

# Appels passerelles: timeout borné et petit nombre de retries (GatewayUnavailable uniquement)
GATEWAY_TIMEOUT_SECONDS = _env_float("GATEWAY_TIMEOUT_SECONDS", 30.0)
GATEWAY_WEBHOOK_TIMEOUT_SECONDS = _env_float("GATEWAY_WEBHOOK_TIMEOUT_SECONDS", 60.0)
GATEWAY_MAX_RETRIES = min(_env_int("GATEWAY_MAX_RETRIES", 2), 2)

# Intention sans référence considérée abandonnée après ce délai (crash pendant l'appel passerelle)
PAYMENTS_INTENT_STALE_SECONDS = _env_int("PAYMENTS_INTENT_STALE_SECONDS", 300)

# Passerelles forcées même sans identifiants (ex: "stripe,paypal"), utile en dev
PAYMENTS_FORCE_GATEWAYS = [g.strip().lower() for g in os.getenv("PAYMENTS_FORCE_GATEWAYS", "").split(",") if g.strip()]


@dataclass(frozen=True)
class GatewayHttpConfig:
    timeout: float = 30.0
    webhook_timeout: float = 60.0
    max_retries: int = 2


@dataclass(frozen=True)
class PayPalConfig:
    client_id: str
    client_secret: str
    mode: str = "sandbox"
    webhook_id: str = ""
    brand_name: str = "Mini Restaurant"
    http: GatewayHttpConfig = field(default_factory=GatewayHttpConfig)

    @property
    def base_url(self) -> str:
        if self.mode == "live":
            return "https://api-m.paypal.com"
        return "https://api-m.sandbox.paypal.com"

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


@dataclass(frozen=True)
class StripeConfig:
    secret_key: str
    webhook_secret: str
    public_key: str = ""
    webhook_tolerance: int = 300
    http: GatewayHttpConfig = field(default_factory=GatewayHttpConfig)

    @property
    def configured(self) -> bool:
        return bool(self.secret_key and self.webhook_secret)


@dataclass(frozen=True)
class PaymobConfig:
    api_key: str
    integration_id: str
    hmac_secret: str
    iframe_id: str = ""
    wallet_integration_id: str = ""
    base_url: str = "https://accept.paymob.com/api"
    http: GatewayHttpConfig = field(default_factory=GatewayHttpConfig)

    @property
    def configured(self) -> bool:
        return bool(self.api_key and self.integration_id and self.hmac_secret)


@dataclass(frozen=True)
class Settings:
    base_url: str
    currency: str
    store: str
    paypal: PayPalConfig
    stripe: StripeConfig
    paymob: PaymobConfig
    force_gateways: tuple = ()
    intent_stale_seconds: int = 300

    def callback_url(self, gateway: str, kind: str = "callback") -> str:
        """URL publique d'un retour passerelle (callback / success / cancel)."""
        return f"{self.base_url.rstrip('/')}/api/v1/payments/{gateway}/{kind}"


def _split_list(value) -> tuple:
    if isinstance(value, str):
        value = value.split(",")
    return tuple(v.strip().lower() for v in value if v and v.strip())


def load_settings(env: Optional[dict] = None) -> Settings:
    """
    Construit les Settings depuis les constantes du module.
    - env: surcharge optionnelle (clé -> valeur) pour les tests, sans toucher à os.environ
    """
    e = env or {}
    http = GatewayHttpConfig(
        timeout=float(e.get("GATEWAY_TIMEOUT_SECONDS", GATEWAY_TIMEOUT_SECONDS)),
        webhook_timeout=float(e.get("GATEWAY_WEBHOOK_TIMEOUT_SECONDS", GATEWAY_WEBHOOK_TIMEOUT_SECONDS)),
        max_retries=min(int(e.get("GATEWAY_MAX_RETRIES", GATEWAY_MAX_RETRIES)), 2),
    )
    return Settings(
        base_url=e.get("BASE_URL", BASE_URL),
        currency=e.get("PAYMENTS_CURRENCY", PAYMENTS_CURRENCY),
        store=e.get("PAYMENTS_STORE", PAYMENTS_STORE),
        paypal=PayPalConfig(
            client_id=e.get("PAYPAL_CLIENT_ID", PAYPAL_CLIENT_ID),
            client_secret=e.get("PAYPAL_CLIENT_SECRET", PAYPAL_CLIENT_SECRET),
            mode=e.get("PAYPAL_MODE", PAYPAL_MODE),
            webhook_id=e.get("PAYPAL_WEBHOOK_ID", PAYPAL_WEBHOOK_ID),
            brand_name=e.get("PAYPAL_BRAND_NAME", PAYPAL_BRAND_NAME),
            http=http,
        ),
        stripe=StripeConfig(
            secret_key=e.get("STRIPE_SECRET_KEY", STRIPE_SECRET_KEY),
            webhook_secret=e.get("STRIPE_WEBHOOK_SECRET", STRIPE_WEBHOOK_SECRET),
            public_key=e.get("STRIPE_PUBLIC_KEY", STRIPE_PUBLIC_KEY),
            http=http,
        ),
        paymob=PaymobConfig(
            api_key=e.get("PAYMOB_API_KEY", PAYMOB_API_KEY),
            integration_id=e.get("PAYMOB_INTEGRATION_ID", PAYMOB_INTEGRATION_ID),
            hmac_secret=e.get("PAYMOB_HMAC_SECRET", PAYMOB_HMAC_SECRET),
            iframe_id=e.get("PAYMOB_IFRAME_ID", PAYMOB_IFRAME_ID),
            wallet_integration_id=e.get("PAYMOB_WALLET_INTEGRATION_ID", PAYMOB_WALLET_INTEGRATION_ID),
            base_url=e.get("PAYMOB_BASE_URL", PAYMOB_BASE_URL),
            http=http,
        ),
        force_gateways=_split_list(e.get("PAYMENTS_FORCE_GATEWAYS", PAYMENTS_FORCE_GATEWAYS)),
        intent_stale_seconds=int(e.get("PAYMENTS_INTENT_STALE_SECONDS", PAYMENTS_INTENT_STALE_SECONDS)),
    )
