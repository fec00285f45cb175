from __future__ import annotations

import re

import httpx
import structlog
from bs4 import BeautifulSoup, Tag
from pydantic import ValidationError

from backend.src.config import Settings
from backend.src.contracts.models import ProductInfo

logger: structlog.stdlib.BoundLogger = structlog.get_logger(__name__)

_PRODUCT_URL_PATTERN = re.compile(
    r"https?://(?:www\.|m\.)?11st\.co\.kr/products/(?:ma/|m/|pa/)?([1-9]\d*)(?:\?.*)?(?:/share)?"
)
_PRICE_NOISE = re.compile(r"[원,\s]")
_RESPONSE_ENCODING = "euc-kr"


class FetchError(RuntimeError):
    """Raised when product data could not be fetched or understood."""


class InvalidProductUrlError(ValueError):
    """Raised when a URL does not point at an 11st product page."""


def parse_product_code(product_url: str) -> str:
    """Extract the numeric product code from an 11st product URL."""
    match = _PRODUCT_URL_PATTERN.match(product_url.strip())
    if match is None:
        raise InvalidProductUrlError(f"Not an 11st product URL: {product_url}")
    return match.group(1)


def build_share_url(product_code: str) -> str:
    return f"http://www.11st.co.kr/products/{product_code}/share"


def _parse_price(text: str) -> int:
    """Parse prices like '12,900원' into an integer amount of won."""
    cleaned = _PRICE_NOISE.sub("", text)
    try:
        return int(cleaned)
    except ValueError as exc:
        raise FetchError(f"Unparseable price: {text!r}") from exc


def _text_of(parent: Tag, *path: str) -> str:
    node: Tag | None = parent
    for name in path:
        node = node.find(name) if node is not None else None
    if node is None:
        raise FetchError(f"Missing element: {'/'.join(path)}")
    return node.get_text(strip=True)


class ElevenStreetFetcher:
    """IPriceFetcher implementation backed by the 11st open API."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client

    def _build_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"Accept": "application/xml"},
            follow_redirects=True,
            timeout=httpx.Timeout(self._settings.fetch_timeout_seconds),
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = self._build_client()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def parse_product(self, content: bytes) -> ProductInfo:
        """Parse the EUC-KR encoded ProductInfo XML response."""
        soup = BeautifulSoup(content, "xml", from_encoding=_RESPONSE_ENCODING)
        product = soup.find("Product")
        if not isinstance(product, Tag):
            raise FetchError("Response contains no Product element")

        sold_out_el = product.find("SoldOutYn")
        is_sold_out = sold_out_el is not None and sold_out_el.get_text(strip=True).upper() == "Y"

        try:
            return ProductInfo(
                product_code=_text_of(product, "ProductCode"),
                product_name=_text_of(product, "ProductName"),
                image_url=_text_of(product, "BasicImage"),
                price=_parse_price(_text_of(product, "ProductPrice", "LowestPrice")),
                is_sold_out=is_sold_out,
                shop=self._settings.eleven_st_shop_name,
            )
        except ValidationError as exc:
            raise FetchError(f"Invalid product data: {exc}") from exc

    async def fetch(self, product_code: str) -> ProductInfo:
        log = logger.bind(product_code=product_code)
        params = {
            "key": self._settings.eleven_st_api_key,
            "apiCode": "ProductInfo",
            "productCode": product_code,
        }
        try:
            response = await self._get_client().get(
                self._settings.eleven_st_api_url, params=params
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            log.warning("product_fetch_http_error", error=str(exc))
            raise FetchError(f"Failed to fetch product {product_code}") from exc

        info = self.parse_product(response.content)
        log.debug("product_fetched", price=info.price, is_sold_out=info.is_sold_out)
        return info
