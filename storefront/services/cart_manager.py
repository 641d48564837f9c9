"""
Cart State Manager

Owns the signed-in user's cart as process-local state and keeps it in
step with the remote cart store:
1. Loads (and reloads) the cart when the identity changes
2. Applies add / set-quantity / remove optimistically, then persists
3. Orders same-product writes by dispatch, rolls back failed writes
4. Derives totals and the order summary from the current lines

All methods run on one event loop. Remote calls are the only suspension
points and visible state is consistent at each of them.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..core.config import settings
from ..core.exceptions import (
    CartError,
    StoreError,
    NotAuthenticated,
    StockExceeded,
    InvalidQuantity,
    OutOfStock,
    ProductNotFound,
    IdentityChanged,
    RemoteWriteFailed,
    RemoteReadFailed,
    StaleCompletionDiscarded,
)
from ..core.identity import Identity, IdentityProvider
from ..models.cart import CartLine, CartStatus, CartSummary
from ..models.product import ProductSnapshot
from .store import RemoteCartStore, ProductSnapshotProvider

logger = logging.getLogger(__name__)

CartListener = Callable[["CartManager"], None]


def _same_user(a: Optional[Identity], b: Optional[Identity]) -> bool:
    if a is None or b is None:
        return a is b
    return a.user_id == b.user_id


@dataclass
class CartResult:
    """Outcome of a cart operation"""
    ok: bool
    product_id: Optional[str] = None
    quantity: Optional[int] = None  # Local quantity after the operation, None if no line
    error: Optional[CartError] = None
    notices: list[CartError] = field(default_factory=list)
    discarded: bool = False  # Superseded by a newer operation

    @property
    def requires_sign_in(self) -> bool:
        return isinstance(self.error, NotAuthenticated)


@dataclass
class LineTrack:
    """
    Write sequencing state of one product.

    `version` is the token of the latest dispatched mutation; `confirmed`
    is the quantity last known to be stored remotely (None: no row);
    `tail` settles when the latest dispatched mutation has settled.
    """
    version: int = 0
    confirmed: Optional[int] = None
    tail: Optional[asyncio.Future] = None

    @property
    def pending(self) -> bool:
        return self.tail is not None


class CartManager:
    """
    Single authoritative owner of the current identity's cart.

    Usage:
        manager = CartManager(cart_store, product_catalog, identity_provider)
        await manager.start()

        result = await manager.add_to_cart("prod-001", 2)
        manager.items(), manager.total_price()
    """

    def __init__(
        self,
        store: RemoteCartStore,
        products: ProductSnapshotProvider,
        identity_provider: IdentityProvider,
        free_shipping_threshold: Optional[float] = None,
        shipping_cost: Optional[float] = None,
    ):
        self._store = store
        self._products = products
        self._identity_provider = identity_provider
        self.free_shipping_threshold = (
            settings.free_shipping_threshold if free_shipping_threshold is None else free_shipping_threshold
        )
        self.shipping_cost = settings.shipping_cost if shipping_cost is None else shipping_cost

        self._identity: Optional[Identity] = None
        self._status = CartStatus.UNAUTHENTICATED
        self._epoch = 0  # Bumped on every identity change
        self._load_seq = 0  # Bumped on every load, latest wins
        self._ready = asyncio.Event()
        self._ready.set()

        self._lines: dict[str, CartLine] = {}
        self._order: list[str] = []
        self._snapshots: dict[str, ProductSnapshot] = {}
        self._tracks: dict[str, LineTrack] = {}
        self._barrier: Optional[asyncio.Future] = None

        self._last_error: Optional[CartError] = None
        self._listeners: list[CartListener] = []
        self._tasks: set[asyncio.Task] = set()
        self.discarded: list[StaleCompletionDiscarded] = []

        self._unsubscribe = identity_provider.subscribe(self._on_identity_change)

    # ==================== Lifecycle ====================

    async def start(self) -> CartResult:
        """Load the cart of whoever is signed in right now"""
        return await self.load(self._identity_provider.current)

    async def settle(self) -> None:
        """Wait for background loads started by identity events"""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    def close(self) -> None:
        """Stop following identity changes"""
        self._unsubscribe()

    def subscribe(self, listener: CartListener) -> Callable[[], None]:
        """Register a change listener, returns an unsubscribe callable"""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def _on_identity_change(self, identity: Optional[Identity]) -> None:
        if _same_user(identity, self._identity):
            self._identity = identity
            return
        self._switch_identity(identity)
        if identity is not None:
            task = asyncio.get_running_loop().create_task(self._fetch(identity))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _switch_identity(self, identity: Optional[Identity]) -> None:
        """Drop everything held for the previous identity"""
        previous = self._identity
        self._identity = identity
        self._epoch += 1
        self._load_seq += 1
        self._lines.clear()
        self._order.clear()
        self._tracks.clear()
        self._barrier = None
        self._last_error = None

        if identity is None:
            self._status = CartStatus.UNAUTHENTICATED
            self._ready.set()
        else:
            self._status = CartStatus.LOADING
            self._ready.clear()

        logger.info(
            f"Cart identity {previous.user_id if previous else 'none'} -> "
            f"{identity.user_id if identity else 'none'}"
        )
        self._notify()

    # ==================== Loading ====================

    async def load(self, identity: Optional[Identity]) -> CartResult:
        """
        Replace local state with the remote cart of `identity`.

        The latest call wins: a result arriving after another load was
        issued, or after the identity changed, is dropped.
        """
        if _same_user(identity, self._identity):
            self._identity = identity
        else:
            self._switch_identity(identity)
        if identity is None:
            return CartResult(ok=True)
        return await self._fetch(identity)

    async def _fetch(self, identity: Identity) -> CartResult:
        if not _same_user(identity, self._identity):
            return CartResult(ok=True, discarded=True)

        self._load_seq += 1
        seq = self._load_seq
        epoch = self._epoch
        self._status = CartStatus.LOADING
        self._ready.clear()
        self._notify()

        try:
            try:
                rows = await self._store.list_by_user(identity.user_id)
                snapshots = await self._products.get_by_ids([row.product_id for row in rows]) if rows else {}
            except StoreError as e:
                if seq != self._load_seq or epoch != self._epoch:
                    self._discard_load(identity, seq)
                    return CartResult(ok=True, discarded=True)
                logger.warning(f"Cart load failed for {identity.user_id}, keeping previous state: {e}")
                error = RemoteReadFailed(f"Could not load cart: {e}")
                self._last_error = error
                self._status = CartStatus.READY
                self._ready.set()
                self._notify()
                return CartResult(ok=False, error=error)

            if seq != self._load_seq or epoch != self._epoch:
                self._discard_load(identity, seq)
                return CartResult(ok=True, discarded=True)

            self._reconcile(rows, snapshots)
            if isinstance(self._last_error, RemoteReadFailed):
                self._last_error = None
            self._status = CartStatus.READY
            self._ready.set()
            logger.info(f"Loaded cart for {identity.user_id}: {len(self._lines)} lines")
            self._notify()
            return CartResult(ok=True)
        finally:
            # Never leave mutations parked behind a load that died
            if seq == self._load_seq and epoch == self._epoch and not self._ready.is_set():
                logger.error(f"Cart load for {identity.user_id} aborted, keeping previous state")
                self._last_error = RemoteReadFailed("Could not load cart")
                self._status = CartStatus.READY
                self._ready.set()
                self._notify()

    async def refresh(self) -> CartResult:
        """Reload the current identity's cart"""
        return await self.load(self._identity)

    def _discard_load(self, identity: Identity, seq: int) -> None:
        logger.debug(f"Discarding superseded load #{seq} for {identity.user_id}")
        self.discarded.append(StaleCompletionDiscarded(None, seq, self._load_seq))

    def _reconcile(self, rows, snapshots: dict[str, ProductSnapshot]) -> None:
        """Fold fetched rows into local state, keeping lines with writes in flight"""
        self._snapshots.update(snapshots)
        lines: dict[str, CartLine] = {}
        remote = {row.product_id: row.quantity for row in rows}

        for row in rows:
            track = self._tracks.setdefault(row.product_id, LineTrack())
            track.confirmed = row.quantity
            if track.pending:
                continue
            product = snapshots.get(row.product_id)
            if product is None or not product.in_stock:
                logger.info(f"Hiding cart row {row.product_id}: product unavailable")
                continue
            quantity = min(row.quantity, product.stock)
            lines[row.product_id] = CartLine(
                product_id=row.product_id,
                quantity=quantity,
                product=product,
                stock_adjusted=quantity != row.quantity,
            )

        for product_id, track in self._tracks.items():
            if product_id not in remote:
                track.confirmed = None
            if track.pending and product_id in self._lines:
                lines[product_id] = self._lines[product_id]

        # Known lines keep their place, newly seen rows follow in remote order
        order = [product_id for product_id in self._order if product_id in lines]
        order += [row.product_id for row in rows if row.product_id in lines and row.product_id not in order]
        order += [product_id for product_id in lines if product_id not in order]

        self._lines = lines
        self._order = order

    # ==================== Mutations ====================

    async def add_to_cart(self, product_id: str, quantity: int = 1) -> CartResult:
        """Add `quantity` of a product, merging into an existing line"""
        if quantity < 1:
            return self._rejected(InvalidQuantity("Quantity must be at least 1", product_id=product_id), product_id)

        try:
            identity, epoch = await self._begin_mutation()
            product = await self._resolve_product(product_id, epoch)
            if not product.in_stock:
                raise OutOfStock(f"{product.name} is out of stock", product_id=product_id)
        except CartError as e:
            return self._rejected(e, product_id)

        line = self._lines.get(product_id)
        requested = (line.quantity if line else 0) + quantity
        applied = min(requested, product.stock)
        notices = self._clamp_notices(product_id, requested, applied)

        if line is not None and line.quantity == applied:
            return CartResult(ok=True, product_id=product_id, quantity=applied, notices=notices)

        return await self._dispatch(identity, epoch, product_id, applied, notices)

    async def update_quantity(self, product_id: str, new_quantity: int) -> CartResult:
        """Set a line's quantity, clamped to stock; zero or less removes it"""
        if new_quantity <= 0:
            return await self.remove_from_cart(product_id)

        try:
            identity, epoch = await self._begin_mutation()
            product = await self._resolve_product(product_id, epoch)
            if not product.in_stock:
                raise OutOfStock(f"{product.name} is out of stock", product_id=product_id)
        except CartError as e:
            return self._rejected(e, product_id)

        applied = min(new_quantity, product.stock)
        notices = self._clamp_notices(product_id, new_quantity, applied)

        line = self._lines.get(product_id)
        if line is not None and line.quantity == applied and not line.error:
            return CartResult(ok=True, product_id=product_id, quantity=applied, notices=notices)

        return await self._dispatch(identity, epoch, product_id, applied, notices)

    async def remove_from_cart(self, product_id: str) -> CartResult:
        """Remove a line; removing an absent line is a successful no-op"""
        try:
            identity, epoch = await self._begin_mutation()
        except CartError as e:
            return self._rejected(e, product_id)

        track = self._tracks.get(product_id)
        has_row = track is not None and (track.pending or track.confirmed is not None)
        if product_id not in self._lines and not has_row:
            return CartResult(ok=True, product_id=product_id)

        return await self._dispatch(identity, epoch, product_id, None, [])

    async def clear(self) -> CartResult:
        """Drop every line locally and remotely"""
        try:
            identity, epoch = await self._begin_mutation()
        except CartError as e:
            return self._rejected(e, None)

        done = asyncio.get_running_loop().create_future()
        waiting = []
        tokens: dict[str, int] = {}
        for product_id, track in self._tracks.items():
            track.version += 1
            tokens[product_id] = track.version
            if track.tail is not None:
                waiting.append(track.tail)
            track.tail = done
        if self._barrier is not None:
            waiting.append(self._barrier)
        self._barrier = done
        self._lines.clear()
        self._notify()

        try:
            for previous in waiting:
                await previous
            if epoch != self._epoch:
                return self._rejected(IdentityChanged("Signed-in user changed"), None)

            try:
                await self._store.delete_all_by_user(identity.user_id)
            except StoreError as e:
                if epoch != self._epoch:
                    return self._rejected(IdentityChanged("Signed-in user changed"), None)
                logger.warning(f"Clearing cart for {identity.user_id} failed, rolling back: {e}")
                for product_id, token in tokens.items():
                    track = self._tracks[product_id]
                    if track.version == token:
                        self._put_line(product_id, track.confirmed, keep_position=True)
                error = RemoteWriteFailed(f"Could not clear cart: {e}")
                self._last_error = error
                return CartResult(ok=False, error=error)

            if epoch != self._epoch:
                return self._rejected(IdentityChanged("Signed-in user changed"), None)
            for product_id, token in tokens.items():
                track = self._tracks[product_id]
                track.confirmed = None
                if track.version != token:
                    self._discard_write(product_id, token, track.version)
                elif product_id in self._order:
                    self._order.remove(product_id)
            logger.info(f"Cleared cart for {identity.user_id}")
            return CartResult(ok=True)
        finally:
            done.set_result(None)
            if self._barrier is done:
                self._barrier = None
            if epoch == self._epoch:
                for product_id, track in self._tracks.items():
                    if track.tail is done:
                        track.tail = None
                    self._sync_pending(product_id)
                self._notify()

    async def _begin_mutation(self) -> tuple[Identity, int]:
        """Resolve who the mutation is for, waiting out an in-flight load"""
        identity = self._identity
        if identity is None:
            raise NotAuthenticated("Sign in to manage your cart")
        epoch = self._epoch
        if not self._ready.is_set():
            await self._ready.wait()
            if epoch != self._epoch:
                if self._identity is None:
                    raise NotAuthenticated("Sign in to manage your cart")
                raise IdentityChanged("Signed-in user changed")
        return identity, epoch

    async def _resolve_product(self, product_id: str, epoch: int) -> ProductSnapshot:
        """Snapshot for a product, fetched when not yet known"""
        line = self._lines.get(product_id)
        if line is not None:
            return line.product
        product = self._snapshots.get(product_id)
        if product is not None:
            return product

        try:
            found = await self._products.get_by_ids([product_id])
        except StoreError as e:
            raise RemoteReadFailed(f"Could not fetch product: {e}", product_id=product_id) from e
        if epoch != self._epoch:
            raise IdentityChanged("Signed-in user changed", product_id=product_id)
        product = found.get(product_id)
        if product is None:
            raise ProductNotFound(f"Unknown product {product_id}", product_id=product_id)
        self._snapshots[product_id] = product
        return product

    async def _dispatch(
        self,
        identity: Identity,
        epoch: int,
        product_id: str,
        quantity: Optional[int],
        notices: list[CartError],
    ) -> CartResult:
        """
        Apply a mutation locally, then persist it.

        The write waits for the previous mutation of the same product to
        settle. A mutation superseded while waiting skips its write; a
        completion arriving after a newer dispatch is discarded.
        """
        track = self._track(product_id)
        track.version += 1
        token = track.version
        previous = track.tail
        done = asyncio.get_running_loop().create_future()
        track.tail = done

        self._put_line(product_id, quantity, pending=True, error=None)
        self._notify()

        try:
            if previous is not None:
                await previous
            if epoch != self._epoch:
                return self._rejected(IdentityChanged("Signed-in user changed"), product_id)
            if token != track.version:
                logger.debug(f"Skipping superseded write #{token} for {product_id}")
                return self._superseded(product_id, notices)

            try:
                if quantity is None:
                    await self._store.delete_row(identity.user_id, product_id)
                else:
                    await self._store.upsert_quantity(identity.user_id, product_id, quantity)
            except StoreError as e:
                if epoch != self._epoch:
                    return self._rejected(IdentityChanged("Signed-in user changed"), product_id)
                if token != track.version:
                    self._discard_write(product_id, token, track.version)
                    return self._superseded(product_id, notices)
                return self._roll_back(product_id, track, e)

            if epoch != self._epoch:
                return self._rejected(IdentityChanged("Signed-in user changed"), product_id)
            track.confirmed = quantity
            if token != track.version:
                self._discard_write(product_id, token, track.version)
                return self._superseded(product_id, notices)

            if quantity is None and product_id in self._order:
                self._order.remove(product_id)
            if isinstance(self._last_error, RemoteWriteFailed) and self._last_error.product_id == product_id:
                self._last_error = None
            return CartResult(ok=True, product_id=product_id, quantity=quantity, notices=notices)
        finally:
            done.set_result(None)
            if track.tail is done:
                track.tail = None
            if epoch == self._epoch:
                self._sync_pending(product_id)
                self._notify()

    def _roll_back(self, product_id: str, track: LineTrack, cause: StoreError) -> CartResult:
        logger.warning(f"Write for {product_id} failed, reverting to {track.confirmed}: {cause}")
        error = RemoteWriteFailed(f"Could not update cart: {cause}", product_id=product_id)
        self._put_line(product_id, track.confirmed, keep_position=True, error=error.code)
        self._last_error = error
        return CartResult(
            ok=False,
            product_id=product_id,
            quantity=self._quantity(product_id),
            error=error,
        )

    def _discard_write(self, product_id: str, token: int, latest: int) -> None:
        logger.debug(f"Discarding stale completion #{token} for {product_id}, latest is #{latest}")
        self.discarded.append(StaleCompletionDiscarded(product_id, token, latest))

    def _superseded(self, product_id: str, notices: list[CartError]) -> CartResult:
        return CartResult(
            ok=True,
            product_id=product_id,
            quantity=self._quantity(product_id),
            notices=notices,
            discarded=True,
        )

    def _rejected(self, error: CartError, product_id: Optional[str]) -> CartResult:
        if isinstance(error, NotAuthenticated):
            logger.info("Cart mutation rejected: sign-in required")
        else:
            logger.warning(f"Cart mutation rejected: {error.code} {error.message}")
        # The cart now belongs to someone else
        if not isinstance(error, IdentityChanged):
            self._last_error = error
        return CartResult(
            ok=False,
            product_id=product_id,
            quantity=self._quantity(product_id) if product_id else None,
            error=error,
        )

    def _clamp_notices(self, product_id: str, requested: int, applied: int) -> list[CartError]:
        if requested <= applied:
            return []
        logger.info(f"Clamped {product_id} from {requested} to {applied}")
        return [StockExceeded(product_id, requested, applied)]

    # ==================== Local state ====================

    def _track(self, product_id: str) -> LineTrack:
        track = self._tracks.get(product_id)
        if track is None:
            track = LineTrack(tail=self._barrier)
            self._tracks[product_id] = track
        return track

    def _put_line(
        self,
        product_id: str,
        quantity: Optional[int],
        keep_position: bool = False,
        **flags,
    ) -> None:
        """Set a line's quantity (None removes it), clamped to stock"""
        product = self._snapshots.get(product_id)
        if quantity is not None and product is not None:
            quantity = min(quantity, product.stock)
        if quantity is None or quantity < 1 or product is None:
            self._lines.pop(product_id, None)
            return

        line = self._lines.get(product_id)
        if line is None:
            line = CartLine(product_id=product_id, quantity=quantity, product=product)
            self._lines[product_id] = line
            if not (keep_position and product_id in self._order):
                if product_id in self._order:
                    self._order.remove(product_id)
                self._order.append(product_id)
        else:
            line.quantity = quantity
        for name, value in flags.items():
            setattr(line, name, value)

    def _sync_pending(self, product_id: str) -> None:
        line = self._lines.get(product_id)
        track = self._tracks.get(product_id)
        if line is not None:
            line.pending = bool(track and track.pending)

    def _quantity(self, product_id: str) -> Optional[int]:
        line = self._lines.get(product_id)
        return line.quantity if line else None

    # ==================== Read accessors ====================

    @property
    def status(self) -> CartStatus:
        return self._status

    @property
    def identity(self) -> Optional[Identity]:
        return self._identity

    @property
    def last_error(self) -> Optional[CartError]:
        return self._last_error

    def is_loading(self) -> bool:
        return self._status == CartStatus.LOADING

    def items(self) -> list[CartLine]:
        """Lines in insertion order (copies)"""
        return [
            self._lines[product_id].model_copy(deep=True)
            for product_id in self._order
            if product_id in self._lines
        ]

    def get_line(self, product_id: str) -> Optional[CartLine]:
        line = self._lines.get(product_id)
        return line.model_copy(deep=True) if line else None

    def total_items(self) -> int:
        return sum(line.quantity for line in self._lines.values())

    def total_price(self) -> float:
        return round(sum(line.quantity * line.product.price for line in self._lines.values()), 2)

    def summary(self) -> CartSummary:
        """Order summary with the free-shipping progress"""
        subtotal = self.total_price()
        threshold = self.free_shipping_threshold
        if not self._lines or subtotal >= threshold:
            shipping = 0.0
        else:
            shipping = self.shipping_cost
        progress = 1.0 if threshold <= 0 else min(subtotal / threshold, 1.0)
        return CartSummary(
            subtotal=subtotal,
            shipping=shipping,
            total=round(subtotal + shipping, 2),
            free_shipping_threshold=threshold,
            remaining_for_free_shipping=round(max(threshold - subtotal, 0.0), 2),
            free_shipping_progress=round(progress, 4),
        )
