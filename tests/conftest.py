"""
Pytest configuration and shared fixtures.

Key fixtures:
- repository: fresh in-memory WorkflowRepository
- sink / notifier: in-memory notification sink and its Notifier
- generator: fake content generator (AsyncMock-backed, no API key needed)
- broker / co_broker / seller / buyer / admin: actors
- services: every workflow service wired to the shared repository
- deal: a deal draft with a seller and a co-broker
- confirmed_deal: a deal with broker-confirmed facts ready for OM generation
"""

import sys
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

# Add src to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

# Load environment variables
from dotenv import load_dotenv

env_file = Path(__file__).parent.parent / '.env'
if env_file.exists():
    load_dotenv(env_file)

from deal_workflow.clients.notification_client import InMemoryNotificationSink, Notifier
from deal_workflow.config import Config
from deal_workflow.models.deal import (
    Actor,
    ActorRole,
    ApprovalSettings,
    AssetType,
    BrokerAssignment,
    PropertyAttributes,
    SellerLink,
)
from deal_workflow.models.distribution import BuyerCriteria, BuyerProfile
from deal_workflow.repository import WorkflowRepository
from deal_workflow.workflow.claims import ClaimResolver
from deal_workflow.workflow.deals import DealService
from deal_workflow.workflow.distribution import DistributionService
from deal_workflow.workflow.gate import BuyerGate
from deal_workflow.workflow.om import OMWorkflow


class StrictThresholdConfig(Config):
    """Deterministic thresholds regardless of the environment."""

    CLAIM_VARIANCE_THRESHOLD = 0.05
    CLAIM_FIELD_THRESHOLDS = {'capRate': 0.02}
    OM_GENERATION_TIMEOUT_SECONDS = 1.0


@pytest.fixture
def test_config() -> type[StrictThresholdConfig]:
    return StrictThresholdConfig


@pytest.fixture
def repository() -> WorkflowRepository:
    return WorkflowRepository()


@pytest.fixture
def sink() -> InMemoryNotificationSink:
    return InMemoryNotificationSink()


@pytest.fixture
def notifier(sink) -> Notifier:
    return Notifier(sink)


@pytest.fixture
def generator() -> AsyncMock:
    """Content generator returning '<section_key> content'."""
    fake = AsyncMock()

    async def _generate(section_key, facts):
        return f'{section_key} content'

    fake.generate_section.side_effect = _generate
    return fake


@pytest.fixture
def broker() -> Actor:
    return Actor(id='broker-1', name='Pat Broker', role=ActorRole.BROKER)


@pytest.fixture
def co_broker() -> Actor:
    return Actor(id='broker-2', name='Sam CoBroker', role=ActorRole.BROKER)


@pytest.fixture
def seller() -> Actor:
    return Actor(id='seller-1', name='Riley Seller', role=ActorRole.SELLER)


@pytest.fixture
def buyer() -> Actor:
    return Actor(id='buyer-1', name='Jordan Buyer', role=ActorRole.BUYER)


@pytest.fixture
def admin() -> Actor:
    return Actor(id='admin-1', name='Avery Admin', role=ActorRole.ADMIN)


@pytest.fixture
def services(repository, generator, notifier, test_config) -> SimpleNamespace:
    deals = DealService(repository)
    claims = ClaimResolver(repository, deals, config=test_config)
    om = OMWorkflow(repository, deals, claims, generator, notifier=notifier, config=test_config)
    distribution = DistributionService(repository, deals, om, notifier=notifier)
    gate = BuyerGate(repository, deals, distribution, notifier=notifier)
    return SimpleNamespace(
        repo=repository,
        deals=deals,
        claims=claims,
        om=om,
        distribution=distribution,
        gate=gate,
    )


def seller_link(
    requires_om_approval: bool = True,
    requires_buyer_approval: bool = False,
    has_direct_access: bool = True,
) -> SellerLink:
    return SellerLink(
        user_id='seller-1',
        name='Riley Seller',
        entity_name='Riverside Holdings LLC',
        organization_id='org-seller',
        has_direct_access=has_direct_access,
        approval_settings=ApprovalSettings(
            requires_om_approval=requires_om_approval,
            requires_buyer_approval=requires_buyer_approval,
        ),
    )


@pytest_asyncio.fixture
async def deal(services, broker):
    """A multifamily deal draft with a seller and a co-broker without capabilities."""
    draft = await services.deals.create_deal_draft(
        organization_id='org-broker',
        broker=broker,
        ingest_source='UPLOAD',
        seller=seller_link(),
        properties=PropertyAttributes(
            property_name='Riverside Apartments',
            property_address='100 River Rd, Austin, TX',
            asset_type=AssetType.MULTIFAMILY,
            asking_price=15_000_000,
            unit_count=120,
        ),
    )
    return await services.deals.add_co_broker(
        draft.id,
        BrokerAssignment(user_id='broker-2', name='Sam CoBroker'),
        broker,
    )


@pytest_asyncio.fixture
async def confirmed_deal(services, deal, broker):
    """The deal with three broker-confirmed facts."""
    for field, value in (
        ('propertyName', 'Riverside Apartments'),
        ('askingPrice', 15_000_000),
        ('unitCount', 120),
    ):
        claim = await services.claims.submit_claim(deal.id, field, value, confidence=0.95)
        await services.claims.verify_claim(claim.id, 'confirm', broker)
    return await services.deals.get_deal_draft(deal.id)


@pytest_asyncio.fixture
async def marketing_ready_deal(services, confirmed_deal, broker, seller):
    """The confirmed deal with a seller-approved OM (OM_APPROVED_FOR_MARKETING)."""
    version = await services.om.generate_om_draft(confirmed_deal.id, broker)
    await services.om.broker_approve(version.id, broker)
    await services.om.seller_approve(version.id, seller)
    return await services.deals.get_deal_draft(confirmed_deal.id)


def make_buyer_profile(
    buyer_id: str = 'buyer-1',
    organization_id: str = 'org-buyer-1',
    is_anonymous: bool = False,
    **criteria,
) -> BuyerProfile:
    return BuyerProfile(
        buyer_id=buyer_id,
        name=f'Buyer {buyer_id}',
        email=f'{buyer_id}@example.com',
        firm_name=f'{buyer_id} Capital',
        organization_id=organization_id,
        is_anonymous=is_anonymous,
        criteria=BuyerCriteria(**criteria),
    )
