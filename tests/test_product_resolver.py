"""
Tests for resolving WMS articles to local products
"""
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.core.exceptions import NetworkError
from wms_sync.domain.events import OrderEventType
from wms_sync.domain.services.product_resolver import ProductResolver, normalized_sku_candidates


@pytest.fixture
def resolver(db_session: AsyncSession, mock_wms_client, event_bus) -> ProductResolver:
    return ProductResolver(db_session, mock_wms_client, event_bus)


class TestCandidates:

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "sku, expected",
        [
            ("ABC-1", ["ABC-1", "ABC_1", "WMS_ABC-1"]),
            ("ABC_1", ["ABC_1", "ABC-1", "WMS_ABC_1"]),
            ("WMS_77", ["WMS_77", "WMS-77", "77"]),
            ("  ", []),
        ],
    )
    def test_normalized_candidates(self, sku, expected):
        assert normalized_sku_candidates(sku) == expected


class TestResolve:

    @pytest.mark.unit
    async def test_normalized_sku_match(self, resolver: ProductResolver, product_factory):
        product = await product_factory(sku="ABC_1")

        assert await resolver.resolve({"article_code": "ABC-1"}) is product

    @pytest.mark.unit
    async def test_stored_wms_reference(self, resolver: ProductResolver, product_factory):
        product = await product_factory(sku="LOCAL-9", wms_article_code="WMS-CODE-9", wms_variant_id="v-9")

        assert await resolver.resolve({"article_code": "WMS-CODE-9"}) is product
        assert await resolver.resolve({"id": "v-9"}) is product

    @pytest.mark.unit
    async def test_creates_product_from_remote_variant(
        self, resolver: ProductResolver, mock_wms_client, event_bus
    ):
        listener = AsyncMock()
        event_bus.subscribe(OrderEventType.PRODUCT_UPDATED, listener)
        mock_wms_client.get_variant.return_value = {"article_code": "V-1", "name": "Vase", "price": "5.00"}

        product = await resolver.resolve({"id": 31})

        mock_wms_client.get_variant.assert_awaited_once_with("31")
        assert product.sku == "V-1"
        assert product.name == "Vase"
        assert product.wms_variant_id == "31"
        assert product.is_placeholder is False
        assert listener.await_args.args[0].product_id == product.id

    @pytest.mark.unit
    async def test_unreachable_wms_falls_back_to_placeholder(self, resolver: ProductResolver, mock_wms_client):
        mock_wms_client.get_variant.side_effect = NetworkError("connection refused")

        product = await resolver.resolve({"id": 55})

        assert product.sku == "WMS_55"
        assert product.is_placeholder is True
        assert product.wms_variant_id == "55"

    @pytest.mark.unit
    async def test_placeholder_reused(self, db_session: AsyncSession):
        resolver = ProductResolver(db_session, None)

        first = await resolver.resolve({"article_code": "NEW-1", "name": "Mystery"})
        resolver.clear_cache()
        second = await resolver.resolve({"article_code": "NEW-1"})

        assert first is second
        assert first.name == "Mystery"

    @pytest.mark.unit
    async def test_fallback_sku(self, resolver: ProductResolver, product_factory):
        product = await product_factory(sku="SKU-1")

        assert await resolver.resolve({}, fallback_sku="SKU-1") is product


class TestStock:

    @pytest.mark.unit
    async def test_unknown_sku(self, resolver: ProductResolver):
        assert await resolver.update_stock("GHOST", 3, "instock") is None

    @pytest.mark.unit
    async def test_untracked_quantity(self, resolver: ProductResolver, product_factory):
        product = await product_factory(sku="SKU-1")

        await resolver.update_stock("SKU-1", None, "onbackorder")

        assert product.manage_stock is False
        assert product.stock_status == "onbackorder"
