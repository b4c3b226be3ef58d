import threading
from typing import Any, Callable, Dict, Optional

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from pymongo.database import Database

import database
from auth import AuthService
from cache import Cache, create_cache, rate_limit_key
from cart import CartService
from catalog import CatalogService
from config import Settings, settings as default_settings
from errors import AuthorizationError, InternalError, RateLimitError
from mfa import MfaService
from orders import OrderService
from scheduler import DebounceScheduler

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login")


class Services:
    """Everything a request handler needs, wired to one store and one cache."""

    def __init__(self, db: Database, cache: Cache, settings: Settings,
                 scheduler: Optional[DebounceScheduler] = None):
        self.db = db
        self.cache = cache
        self.settings = settings
        self.auth = AuthService(db, cache, settings)
        self.catalog = CatalogService(db, cache, settings)
        self.carts = CartService(db, cache, settings, scheduler)
        self.orders = OrderService(db, cache, settings, self.carts)
        self.mfa = MfaService(db)


_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    global _services
    if _services is None:
        with _services_lock:
            if _services is None:
                if database.db is None:
                    raise InternalError("Database not configured")
                database.ensure_indexes(database.db)
                _services = Services(database.db, create_cache(default_settings), default_settings)
    return _services


def current_services() -> Optional[Services]:
    return _services


def get_current_user(
    token: str = Depends(oauth2_scheme),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return services.auth.authenticate(token)


def require_admin(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user["role"] != "admin":
        raise AuthorizationError()
    return user


def rate_limit(scope: str, limit: Callable[[Settings], int], production_only: bool = False,
               message: Optional[str] = None):
    """Fixed-window limit per client IP, counted in the cache. Fails open."""

    def dependency(request: Request, services: Services = Depends(get_services)) -> None:
        if production_only and not services.settings.is_production:
            return
        client_ip = request.client.host if request.client else "unknown"
        count = services.cache.hit(rate_limit_key(scope, client_ip), services.settings.rate_limit_window)
        if count is not None and count > limit(services.settings):
            raise RateLimitError(message)

    return dependency
