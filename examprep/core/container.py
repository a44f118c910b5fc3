"""
Process-wide component graph, built once at startup from Settings.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
import logging

from examprep.core.auth import IdentityProvider, JwtIdentityProvider, StaticIdentityProvider
from examprep.core.config import Settings
from examprep.core.database import build_engine, build_sessionmaker, init_db
from examprep.core.rate_limit import MemoryRateLimitBackend, RateLimiter, RedisRateLimitBackend
from examprep.models.base import utcnow
from examprep.services.admin import AdminService
from examprep.services.ai_services import OpenAIContentGenerator
from examprep.services.billing import BillingGateway, MockBillingGateway, StripeBillingGateway
from examprep.services.content import ContentGenerator, StaticContentGenerator
from examprep.services.entitlements import EntitlementResolver
from examprep.services.lifecycle import TestLifecycleManager
from examprep.services.performance import PerformanceAggregator
from examprep.services.storage import LocalObjectStorage, MemoryObjectStorage, ObjectStorage
from examprep.services.subscriptions import SubscriptionStateMachine
from examprep.services.uploads import UploadService
from examprep.services.users import UserDirectory
from examprep.stores.base import Store
from examprep.stores.memory import MemoryStore
from examprep.stores.sql import SqlStore

logger = logging.getLogger(__name__)


@dataclass
class Container:
    settings: Settings
    store: Store
    identity: IdentityProvider
    billing: BillingGateway
    generator: ContentGenerator
    storage: ObjectStorage
    rate_limiter: RateLimiter
    entitlements: EntitlementResolver
    subscriptions: SubscriptionStateMachine
    lifecycle: TestLifecycleManager
    performance: PerformanceAggregator
    users: UserDirectory
    uploads: UploadService
    admin: AdminService

    def close(self) -> None:
        self.store.close()


def _secret(value) -> str:
    return value.get_secret_value() if value is not None else ""


def build_store(settings: Settings) -> Store:
    if settings.STORE_BACKEND == "memory":
        return MemoryStore()
    if settings.STORE_BACKEND == "sql":
        engine = build_engine(settings)
        init_db(engine)
        return SqlStore(build_sessionmaker(engine))
    raise ValueError(f"Unknown STORE_BACKEND: {settings.STORE_BACKEND}")


def build_identity(settings: Settings) -> IdentityProvider:
    if settings.AUTH_MODE == "static":
        if settings.is_production():
            raise ValueError("AUTH_MODE=static is not allowed in production")
        return StaticIdentityProvider(settings.MOCK_USER_ID)
    if settings.AUTH_MODE == "jwt":
        return JwtIdentityProvider(settings.SECRET_KEY.get_secret_value(), settings.ALGORITHM)
    raise ValueError(f"Unknown AUTH_MODE: {settings.AUTH_MODE}")


def build_billing(settings: Settings) -> BillingGateway:
    if settings.BILLING_BACKEND == "stripe":
        if not settings.STRIPE_SECRET_KEY or not settings.STRIPE_WEBHOOK_SECRET or not settings.STRIPE_PRICE_ID:
            raise ValueError("Stripe billing needs STRIPE_SECRET_KEY, STRIPE_WEBHOOK_SECRET and STRIPE_PRICE_ID")
        return StripeBillingGateway(
            api_key=_secret(settings.STRIPE_SECRET_KEY),
            webhook_secret=_secret(settings.STRIPE_WEBHOOK_SECRET),
            price_id=settings.STRIPE_PRICE_ID,
            app_url=settings.APP_URL,
        )
    if settings.BILLING_BACKEND == "mock":
        return MockBillingGateway(settings.APP_URL)
    raise ValueError(f"Unknown BILLING_BACKEND: {settings.BILLING_BACKEND}")


def build_generator(settings: Settings) -> ContentGenerator:
    if settings.CONTENT_BACKEND == "openai":
        if not settings.OPENAI_API_KEY:
            raise ValueError("CONTENT_BACKEND=openai needs OPENAI_API_KEY")
        return OpenAIContentGenerator(
            api_key=_secret(settings.OPENAI_API_KEY),
            model=settings.OPENAI_MODEL,
            temperature=settings.OPENAI_TEMPERATURE,
            max_tokens=settings.OPENAI_MAX_TOKENS,
            batch_size=settings.OPENAI_BATCH_SIZE,
        )
    if settings.CONTENT_BACKEND == "static":
        return StaticContentGenerator()
    raise ValueError(f"Unknown CONTENT_BACKEND: {settings.CONTENT_BACKEND}")


def build_storage(settings: Settings) -> ObjectStorage:
    if settings.STORAGE_BACKEND == "local":
        return LocalObjectStorage(settings.UPLOAD_DIR)
    if settings.STORAGE_BACKEND == "memory":
        return MemoryObjectStorage()
    raise ValueError(f"Unknown STORAGE_BACKEND: {settings.STORAGE_BACKEND}")


def build_rate_limiter(settings: Settings) -> RateLimiter:
    if settings.RATE_LIMIT_BACKEND == "redis":
        backend = RedisRateLimitBackend.from_url(settings.REDIS_URL, settings.REDIS_SOCKET_TIMEOUT)
    elif settings.RATE_LIMIT_BACKEND == "memory":
        backend = MemoryRateLimitBackend()
    else:
        raise ValueError(f"Unknown RATE_LIMIT_BACKEND: {settings.RATE_LIMIT_BACKEND}")
    return RateLimiter(
        backend,
        limits={
            "authenticated": settings.RATE_LIMIT_AUTHENTICATED_PER_WINDOW,
            "ai_endpoint": settings.RATE_LIMIT_AI_PER_WINDOW,
        },
        window=settings.RATE_LIMIT_WINDOW_SECONDS,
        enabled=settings.RATE_LIMIT_ENABLED,
    )


def build_container(
    settings: Settings,
    store: Optional[Store] = None,
    identity: Optional[IdentityProvider] = None,
    billing: Optional[BillingGateway] = None,
    generator: Optional[ContentGenerator] = None,
    storage: Optional[ObjectStorage] = None,
    rate_limiter: Optional[RateLimiter] = None,
    clock: Callable[[], datetime] = utcnow,
) -> Container:
    """Wire every component. Explicit arguments override the configured backends."""
    store = store or build_store(settings)
    entitlements = EntitlementResolver(
        store,
        free_test_limit=settings.FREE_TEST_LIMIT,
        free_upload_limit=settings.FREE_UPLOAD_LIMIT,
        clock=clock,
    )
    generator = generator or build_generator(settings)
    storage = storage or build_storage(settings)
    container = Container(
        settings=settings,
        store=store,
        identity=identity or build_identity(settings),
        billing=billing or build_billing(settings),
        generator=generator,
        storage=storage,
        rate_limiter=rate_limiter or build_rate_limiter(settings),
        entitlements=entitlements,
        subscriptions=SubscriptionStateMachine(store),
        lifecycle=TestLifecycleManager(
            store,
            entitlements,
            generator,
            generation_timeout=settings.GENERATION_TIMEOUT_SECONDS,
            explanation_timeout=settings.EXPLANATION_TIMEOUT_SECONDS,
            max_upload_questions=settings.MAX_UPLOAD_TEST_QUESTIONS,
            clock=clock,
        ),
        performance=PerformanceAggregator(store, clock=clock),
        users=UserDirectory(store),
        uploads=UploadService(
            store,
            storage,
            entitlements,
            allowed_extensions=settings.ALLOWED_EXTENSIONS,
            max_size=settings.MAX_UPLOAD_SIZE,
            expiry_days=settings.UPLOAD_EXPIRY_DAYS,
            clock=clock,
        ),
        admin=AdminService(store, admin_emails=settings.ADMIN_EMAILS, monthly_price=settings.SUBSCRIPTION_PRICE_USD),
    )
    logger.info(
        f"Container built: store={type(store).__name__} generator={type(generator).__name__} "
        f"billing={type(container.billing).__name__} storage={type(storage).__name__}"
    )
    return container
