"""
Provider configuration and gateway selection.

Credentials come from the payment_providers rows (encrypted at rest);
the environment is only consulted when a provider has no row at all.
An inactive row disables the provider even if the environment has keys.
"""
import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import settings
from shared.errors import NotFoundError, UnsupportedProvider
from shared.security.encryption import DecryptionError, decrypt_secret, encrypt_secret

from .gateways.base import PaymentGateway, ProviderCredentials
from .gateways.paystack_gateway import PaystackGateway
from .gateways.stripe_gateway import StripeGateway
from .models import PaymentProvider
from .repository import ProviderRepository
from .schemas import ProviderConfigUpdate, ProviderPublicConfig, ProviderResponse

logger = structlog.get_logger(__name__)

GATEWAY_CLASSES = {
    "stripe": StripeGateway,
    "paystack": PaystackGateway,
}
SUPPORTED_PROVIDERS = tuple(GATEWAY_CLASSES)


def _env_credentials(name: str) -> ProviderCredentials | None:
    if name == "stripe" and settings.STRIPE_SECRET_KEY:
        return ProviderCredentials(
            name=name,
            secret_key=settings.STRIPE_SECRET_KEY,
            public_key=settings.STRIPE_PUBLISHABLE_KEY or None,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET or None,
        )
    if name == "paystack" and settings.PAYSTACK_SECRET_KEY:
        return ProviderCredentials(
            name=name,
            secret_key=settings.PAYSTACK_SECRET_KEY,
            public_key=settings.PAYSTACK_PUBLIC_KEY or None,
        )
    return None


class ProviderConfigService:

    @staticmethod
    async def get_credentials(db: AsyncSession, name: str) -> ProviderCredentials | None:
        row = await ProviderRepository.get(db, name)
        if row is None:
            return _env_credentials(name)
        if not row.is_active:
            return None
        try:
            secret_key = decrypt_secret(row.secret_key_encrypted)
        except DecryptionError:
            logger.error("provider_credentials_unreadable", provider=name)
            return None
        if not secret_key:
            return None
        return ProviderCredentials(
            name=name,
            secret_key=secret_key,
            public_key=decrypt_secret(row.public_key_encrypted) or None,
            webhook_secret=decrypt_secret(row.webhook_secret_encrypted) or None,
            configuration=row.configuration or {},
        )

    @staticmethod
    async def supported_currencies(db: AsyncSession, name: str) -> list[str] | None:
        row = await ProviderRepository.get(db, name)
        if row is None or not row.supported_currencies:
            return None
        return [c.upper() for c in row.supported_currencies]

    @staticmethod
    def _to_response(row: PaymentProvider) -> ProviderResponse:
        return ProviderResponse(
            name=row.name,
            display_name=row.display_name,
            is_active=row.is_active,
            has_secret_key=bool(row.secret_key_encrypted),
            has_public_key=bool(row.public_key_encrypted),
            has_webhook_secret=bool(row.webhook_secret_encrypted),
            supported_currencies=row.supported_currencies or [],
            configuration=row.configuration or {},
        )

    @staticmethod
    async def list_providers(db: AsyncSession) -> list[ProviderResponse]:
        rows = await ProviderRepository.list_all(db)
        return [ProviderConfigService._to_response(row) for row in rows]

    @staticmethod
    async def upsert(db: AsyncSession, name: str, data: ProviderConfigUpdate) -> ProviderResponse:
        if name not in SUPPORTED_PROVIDERS:
            raise UnsupportedProvider(f"Unknown payment provider '{name}'", provider=name)

        row = await ProviderRepository.get(db, name) or PaymentProvider(name=name, is_active=False)
        # Blank secrets keep whatever is stored
        if data.secret_key:
            row.secret_key_encrypted = encrypt_secret(data.secret_key)
        if data.public_key:
            row.public_key_encrypted = encrypt_secret(data.public_key)
        if data.webhook_secret:
            row.webhook_secret_encrypted = encrypt_secret(data.webhook_secret)
        if data.display_name is not None:
            row.display_name = data.display_name
        if data.supported_currencies is not None:
            row.supported_currencies = [c.upper() for c in data.supported_currencies]
        if data.configuration is not None:
            row.configuration = data.configuration
        if data.is_active is not None:
            row.is_active = data.is_active

        row = await ProviderRepository.save(db, row)
        logger.info("payment_provider_saved", provider=name, is_active=row.is_active)
        return ProviderConfigService._to_response(row)

    @staticmethod
    async def set_active(db: AsyncSession, name: str, is_active: bool) -> ProviderResponse:
        row = await ProviderRepository.get(db, name)
        if row is None:
            raise NotFoundError("Payment provider is not configured", provider=name)
        row.is_active = is_active
        row = await ProviderRepository.save(db, row)
        logger.info("payment_provider_toggled", provider=name, is_active=is_active)
        return ProviderConfigService._to_response(row)

    @staticmethod
    async def public_config(db: AsyncSession) -> list[ProviderPublicConfig]:
        configs = []
        for name in SUPPORTED_PROVIDERS:
            credentials = await ProviderConfigService.get_credentials(db, name)
            configs.append(ProviderPublicConfig(
                name=name,
                enabled=credentials is not None,
                public_key=credentials.public_key if credentials else None,
                supported_currencies=await ProviderConfigService.supported_currencies(db, name) or [],
            ))
        return configs


class GatewayRegistry:
    """
    Builds gateways from the stored configuration and applies the
    provider selection rule. Tests hand in ready-made gateways instead.
    """

    def __init__(self, gateways: dict[str, PaymentGateway] | None = None, paystack_currency: str | None = None):
        self._gateways = dict(gateways or {})
        self.paystack_currency = (paystack_currency or settings.PAYSTACK_CURRENCY).upper()

    def select_provider(self, currency: str, requested: str | None = None) -> str:
        """
        An explicit request wins; otherwise the Paystack currency goes to
        Paystack and everything else to Stripe. Never substitutes one
        provider for another.
        """
        if requested:
            requested = requested.lower()
            if requested not in SUPPORTED_PROVIDERS:
                raise UnsupportedProvider(f"Unknown payment provider '{requested}'", provider=requested)
            return requested
        return "paystack" if currency.upper() == self.paystack_currency else "stripe"

    async def get(self, db: AsyncSession, name: str) -> PaymentGateway:
        if name in self._gateways:
            return self._gateways[name]
        if name not in GATEWAY_CLASSES:
            raise UnsupportedProvider(f"Unknown payment provider '{name}'", provider=name)
        credentials = await ProviderConfigService.get_credentials(db, name)
        if credentials is None:
            raise UnsupportedProvider(f"Payment provider '{name}' is not configured", provider=name)
        return GATEWAY_CLASSES[name](credentials)

    async def resolve(self, db: AsyncSession, currency: str, requested: str | None = None) -> PaymentGateway:
        name = self.select_provider(currency, requested)
        currencies = await ProviderConfigService.supported_currencies(db, name)
        if currencies and currency.upper() not in currencies:
            raise UnsupportedProvider(
                f"{name} does not accept {currency.upper()}", provider=name, currency=currency.upper()
            )
        return await self.get(db, name)
