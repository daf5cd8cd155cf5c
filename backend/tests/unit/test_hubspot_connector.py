"""
Unit tests for the HubSpot CRM connector
HTTP is served by httpx.MockTransport.
"""
import json
import pytest
import httpx

from leadflow.core.errors import CrmRejectedError, DataIntegrityError, TransientInfraError
from leadflow.infrastructure.connectors.crm.hubspot import HubSpotConnector, _split_name


def _connector(handler):
    return HubSpotConnector("pat-test", transport=httpx.MockTransport(handler))


class TestSetup:

    def test_requires_token(self):
        """Connector needs an access token"""
        with pytest.raises(ValueError):
            HubSpotConnector("")

    def test_provider_name(self):
        """Test the provider name"""
        assert HubSpotConnector("pat-test").provider_name == "hubspot"

    def test_split_name(self):
        """Test full names split into first and last"""
        assert _split_name("Sara Khan Ali") == ("Sara", "Khan Ali")
        assert _split_name("Sara") == ("Sara", None)
        assert _split_name("  ") == (None, None)


class TestContacts:

    @pytest.mark.asyncio
    async def test_check_lead_exists_by_phone(self):
        """Test contact lookup by phone"""
        requests = []

        def handler(request):
            requests.append(request)
            return httpx.Response(200, json={"results": [{
                "id": "501",
                "properties": {"firstname": "Sara", "lastname": "Khan", "phone": "+971500000001"}
            }]})

        lead = await _connector(handler).check_lead_exists("+971500000001", "sara@example.com")

        assert lead.id == "501"
        assert lead.name == "Sara Khan"
        assert len(requests) == 1
        assert requests[0].url.path == "/crm/v3/objects/contacts/search"
        assert requests[0].headers["Authorization"] == "Bearer pat-test"
        body = json.loads(requests[0].content)
        assert body["filterGroups"][0]["filters"][0] == {
            "propertyName": "phone", "operator": "EQ", "value": "+971500000001"
        }

    @pytest.mark.asyncio
    async def test_check_lead_exists_falls_back_to_email(self):
        """Test contact lookup falls back to email"""
        searched = []

        def handler(request):
            prop = json.loads(request.content)["filterGroups"][0]["filters"][0]["propertyName"]
            searched.append(prop)
            if prop == "email":
                return httpx.Response(200, json={"results": [{"id": "502", "properties": {}}]})
            return httpx.Response(200, json={"results": []})

        lead = await _connector(handler).check_lead_exists("+1", "sara@example.com")

        assert lead.id == "502"
        assert searched == ["phone", "email"]

    @pytest.mark.asyncio
    async def test_check_lead_not_found(self):
        """Unknown contact returns None"""
        lead = await _connector(
            lambda request: httpx.Response(200, json={"results": []})
        ).check_lead_exists("+1")

        assert lead is None

    @pytest.mark.asyncio
    async def test_create_lead(self):
        """Test contact creation"""
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "600", "properties": bodies[-1]["properties"]})

        lead = await _connector(handler).create_lead("Sara Khan", "+971500000001", "sara@example.com")

        assert lead.id == "600"
        assert bodies[0]["properties"] == {
            "firstname": "Sara",
            "lastname": "Khan",
            "phone": "+971500000001",
            "email": "sara@example.com",
        }


class TestDeals:

    @pytest.mark.asyncio
    async def test_find_opportunity_by_reference(self):
        """Test deal lookup by reference"""
        def handler(request):
            filters = json.loads(request.content)["filterGroups"][0]["filters"][0]
            assert request.url.path == "/crm/v3/objects/deals/search"
            assert filters["propertyName"] == HubSpotConnector.TRACE_PROPERTY
            return httpx.Response(200, json={"results": [{
                "id": "900",
                "properties": {"dealname": "Sara - Dubai", "dealstage": "appointmentscheduled",
                               HubSpotConnector.TRACE_PROPERTY: filters["value"]}
            }]})

        deal = await _connector(handler).find_opportunity_by_reference("trace-1")

        assert deal.id == "900"
        assert deal.reference == "trace-1"

    @pytest.mark.asyncio
    async def test_create_opportunity(self):
        """Test deal creation"""
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(201, json={"id": "901", "properties": bodies[-1]["properties"]})

        deal = await _connector(handler).create_opportunity(
            name="Sara - Dubai", lead_id="600", reference="trace-1", owner_id="77"
        )

        assert deal.id == "901"
        assert deal.lead_id == "600"
        props = bodies[0]["properties"]
        assert props["dealstage"] == "appointmentscheduled"
        assert props[HubSpotConnector.TRACE_PROPERTY] == "trace-1"
        assert props["hubspot_owner_id"] == "77"
        assert bodies[0]["associations"][0]["to"] == {"id": "600"}


class TestFailures:

    @pytest.mark.asyncio
    async def test_error_status_is_transient(self):
        """Server errors are transient"""
        connector = _connector(lambda request: httpx.Response(502, text="bad gateway"))

        with pytest.raises(TransientInfraError):
            await connector.check_lead_exists("+1")

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self):
        """Network errors are transient"""
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientInfraError):
            await _connector(handler).create_lead("Sara", "+1")

    @pytest.mark.asyncio
    async def test_bad_request_is_rejected_not_retried(self):
        """A 400 means the request itself is invalid; it surfaces as a data integrity failure"""
        connector = _connector(lambda request: httpx.Response(400, json={"message": "invalid owner"}))

        with pytest.raises(CrmRejectedError) as exc_info:
            await connector.create_opportunity(name="Sara - Dubai", lead_id="600", reference="t1")

        assert exc_info.value.status_code == 400
        assert isinstance(exc_info.value, DataIntegrityError)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [401, 429])
    async def test_retryable_client_errors_are_transient(self, status):
        """Token and rate-limit failures may clear up, so they stay retryable"""
        connector = _connector(lambda request: httpx.Response(status, text="try later"))

        with pytest.raises(TransientInfraError):
            await connector.check_lead_exists("+1")
