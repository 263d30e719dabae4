from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from bookstore.core.config import Settings, settings as default_settings
from bookstore.core.store import DocumentStore
from bookstore.services.cart_service import CartService
from bookstore.services.catalog_service import CatalogService
from bookstore.services.event_bus import EventBus
from bookstore.services.monitor import PriceMonitor
from bookstore.services.notification_service import NotificationService
from bookstore.services.offline_queue import ConnectivityMonitor, OfflineQueue
from bookstore.services.wishlist_service import WishlistService
from bookstore.utils.helpers import get_current_timestamp


@dataclass
class Services:
    """Wired service instances shared by the API and the background monitor."""
    store: DocumentStore
    catalog: CatalogService
    notifications: NotificationService
    events: EventBus
    offline: OfflineQueue
    connectivity: ConnectivityMonitor
    wishlist: WishlistService
    cart: CartService
    monitor: PriceMonitor


def build_services(
    store: DocumentStore,
    settings: Settings = default_settings,
    clock: Callable[[], datetime] = get_current_timestamp,
    scheduler=None,
    offline_dir: Optional[str] = None
) -> Services:
    catalog = CatalogService(store)
    notifications = NotificationService(store, clock=clock, settings=settings)
    events = EventBus()
    offline = OfflineQueue(offline_dir or settings.OFFLINE_QUEUE_DIR)
    connectivity = ConnectivityMonitor()

    wishlist = WishlistService(
        store, catalog, notifications, events, offline, connectivity, clock=clock, settings=settings
    )
    cart = CartService(store, catalog, events, offline, connectivity, clock=clock, settings=settings)
    monitor = PriceMonitor(
        wishlist, cart, store, connectivity, scheduler=scheduler, clock=clock, settings=settings
    )

    connectivity.on_reconnect(wishlist.sync_offline_changes)
    connectivity.on_reconnect(cart.sync_offline_changes)

    return Services(
        store=store,
        catalog=catalog,
        notifications=notifications,
        events=events,
        offline=offline,
        connectivity=connectivity,
        wishlist=wishlist,
        cart=cart,
        monitor=monitor
    )


_services: Optional[Services] = None


def set_services(services: Optional[Services]) -> None:
    global _services
    _services = services


def get_services() -> Optional[Services]:
    return _services
