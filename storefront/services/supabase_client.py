"""
Supabase REST Client

PostgREST-backed implementations of the remote cart store and the
product snapshot provider. Requests carry the project API key and the
signed-in user's access token so row level security applies.
"""

import logging
from typing import Iterable, Optional, Any

import httpx

from ..core.exceptions import StoreError
from ..core.identity import IdentityProvider
from ..models.cart import CartRow
from ..models.product import ProductSnapshot

logger = logging.getLogger(__name__)


class SupabaseClient:
    """
    Thin async client for the Supabase REST endpoint.

    Any transport error or error response is raised as StoreError.
    """

    def __init__(
        self,
        supabase_url: str,
        api_key: str,
        identity_provider: Optional[IdentityProvider] = None,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize Supabase client.

        Args:
            supabase_url: Project URL, e.g. https://xyz.supabase.co
            api_key: Project anon key
            identity_provider: Source of the user's bearer token
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests)
        """
        self.base_url = f"{supabase_url.rstrip('/')}/rest/v1"
        self._api_key = api_key
        self._identity_provider = identity_provider
        self._http_client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def close(self) -> None:
        """Close HTTP client"""
        await self._http_client.aclose()

    def _generate_headers(self, prefer: Optional[str] = None) -> dict[str, str]:
        """Generate headers including the bearer token if signed in"""
        token = self._api_key
        identity = self._identity_provider.current if self._identity_provider else None
        if identity and identity.access_token:
            token = identity.access_token

        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[dict[str, str]] = None,
        body: Optional[Any] = None,
        prefer: Optional[str] = None,
    ) -> Any:
        """Make a request against a table endpoint"""
        url = f"{self.base_url}/{table}"

        try:
            response = await self._http_client.request(
                method=method,
                url=url,
                params=params,
                json=body,
                headers=self._generate_headers(prefer),
            )
        except httpx.HTTPError as e:
            logger.error(f"Request failed: {method} {url} - {e}")
            raise StoreError(f"{method} {table} failed: {e}") from e

        if response.status_code >= 400:
            logger.error(f"Request failed: {response.status_code} - {response.text}")
            raise StoreError(f"{method} {table} returned {response.status_code}")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            logger.error(f"Malformed response body: {method} {url} - {e}")
            raise StoreError(f"{method} {table} returned a malformed body") from e


class SupabaseCartStore:
    """Remote cart store over a `(user_id, product_id, quantity)` table"""

    def __init__(self, client: SupabaseClient, table: str = "cart_items"):
        self.client = client
        self.table = table

    async def list_by_user(self, user_id: str) -> list[CartRow]:
        """Get all cart rows of a user, oldest first"""
        data = await self.client._request(
            "GET",
            self.table,
            params={
                "select": "product_id,quantity",
                "user_id": f"eq.{user_id}",
                "order": "created_at.asc",
            },
        )
        try:
            return [CartRow(product_id=str(row["product_id"]), quantity=row["quantity"]) for row in data or []]
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Malformed cart rows from {self.table}: {e}") from e

    async def upsert_quantity(self, user_id: str, product_id: str, quantity: int) -> None:
        """Insert the row or overwrite its quantity on (user_id, product_id) conflict"""
        await self.client._request(
            "POST",
            self.table,
            params={"on_conflict": "user_id,product_id"},
            body={"user_id": user_id, "product_id": product_id, "quantity": quantity},
            prefer="resolution=merge-duplicates,return=minimal",
        )

    async def delete_row(self, user_id: str, product_id: str) -> None:
        """Delete one row"""
        await self.client._request(
            "DELETE",
            self.table,
            params={"user_id": f"eq.{user_id}", "product_id": f"eq.{product_id}"},
        )

    async def delete_all_by_user(self, user_id: str) -> None:
        """Delete all rows of a user"""
        await self.client._request(
            "DELETE",
            self.table,
            params={"user_id": f"eq.{user_id}"},
        )


class SupabaseProductCatalog:
    """Product snapshot provider over the products table"""

    def __init__(self, client: SupabaseClient, table: str = "products"):
        self.client = client
        self.table = table

    async def get_by_ids(self, product_ids: Iterable[str]) -> dict[str, ProductSnapshot]:
        """Fetch snapshots for the given product IDs"""
        ids = list(dict.fromkeys(product_ids))
        if not ids:
            return {}

        data = await self.client._request(
            "GET",
            self.table,
            params={
                "select": "id,name,price,stock,image_url",
                "id": f"in.({','.join(ids)})",
            },
        )
        snapshots = {}
        try:
            for row in data or []:
                snapshot = ProductSnapshot(
                    id=str(row["id"]),
                    name=row["name"],
                    price=float(row["price"]),
                    stock=row.get("stock") or 0,
                    image_url=row.get("image_url"),
                )
                snapshots[snapshot.id] = snapshot
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Malformed product rows from {self.table}: {e}") from e
        return snapshots
