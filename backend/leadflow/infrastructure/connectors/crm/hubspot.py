"""
HubSpot CRM Connector
Private-app token integration with the HubSpot CRM v3 API.

Leads map to HubSpot contacts and opportunities to deals. Every deal we
create carries our trace id in the custom deal property TRACE_PROPERTY, so a
redelivered sync message finds the deal instead of creating a second one.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from leadflow.core.errors import CrmRejectedError, TransientInfraError
from leadflow.infrastructure.connectors.crm.base import CRMProvider, CRMLead, CRMOpportunity

logger = logging.getLogger(__name__)


class HubSpotConnector(CRMProvider):
    """
    HubSpot CRM integration.

    Setup Required:
    - Create a HubSpot private app with the scopes below
    - Set HUBSPOT_ACCESS_TOKEN
    - Create the deal property named by TRACE_PROPERTY (single-line text)

    Scopes:
    - crm.objects.contacts.read
    - crm.objects.contacts.write
    - crm.objects.deals.read
    - crm.objects.deals.write
    """

    API_BASE_URL = "https://api.hubapi.com/crm/v3"
    TRACE_PROPERTY = "leadflow_trace_id"
    CONTACT_PROPERTIES = ["email", "firstname", "lastname", "phone"]
    DEAL_TO_CONTACT_ASSOCIATION = 3
    TIMEOUT = 10.0
    # 4xx answers that may succeed later (token or rate limits); other 4xx are final
    RETRYABLE_CLIENT_ERRORS = frozenset({401, 403, 408, 429})

    def __init__(
        self,
        access_token: str,
        deal_stage: str = "appointmentscheduled",
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Args:
            access_token: Private app token
            deal_stage: Stage for newly created deals
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not access_token:
            raise ValueError("HubSpot access token is required")
        self._access_token = access_token
        self.deal_stage = deal_stage
        self._transport = transport

    @property
    def provider_name(self) -> str:
        return "hubspot"

    def _get_auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self._access_token}",
            "Content-Type": "application/json"
        }

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Send one API request.

        Raises:
            TransientInfraError: Network failure, 5xx or a retryable 4xx
            CrmRejectedError: Any other 4xx; the request itself is invalid
        """
        try:
            async with httpx.AsyncClient(
                base_url=self.API_BASE_URL,
                timeout=self.TIMEOUT,
                transport=self._transport
            ) as client:
                response = await client.request(
                    method, path, json=json, headers=self._get_auth_headers()
                )
        except httpx.HTTPError as e:
            logger.error(f"HubSpot request {method} {path} failed: {e}")
            raise TransientInfraError(f"HubSpot unreachable: {e}") from e

        status = response.status_code
        if status in (200, 201):
            return response.json()

        logger.error(f"HubSpot {method} {path} returned {status}: {response.text}")
        message = f"HubSpot {method} {path} failed with status {status}"
        if 400 <= status < 500 and status not in self.RETRYABLE_CLIENT_ERRORS:
            raise CrmRejectedError(message, status)
        raise TransientInfraError(message)

    async def _search(
        self,
        object_type: str,
        property_name: str,
        value: str,
        properties: List[str]
    ) -> List[Dict[str, Any]]:
        data = await self._request("POST", f"/objects/{object_type}/search", json={
            "filterGroups": [{
                "filters": [{
                    "propertyName": property_name,
                    "operator": "EQ",
                    "value": value
                }]
            }],
            "properties": properties,
            "limit": 1
        })
        return data.get("results", [])

    async def check_lead_exists(
        self,
        phone: Optional[str],
        email: Optional[str] = None
    ) -> Optional[CRMLead]:
        for property_name, value in (("phone", phone), ("email", email)):
            if not value:
                continue
            results = await self._search("contacts", property_name, value, self.CONTACT_PROPERTIES)
            if results:
                return self._parse_contact(results[0])
        return None

    async def create_lead(
        self,
        name: Optional[str],
        phone: Optional[str],
        email: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None
    ) -> CRMLead:
        first_name, last_name = _split_name(name)
        props: Dict[str, Any] = {}

        if first_name:
            props["firstname"] = first_name
        if last_name:
            props["lastname"] = last_name
        if phone:
            props["phone"] = phone
        if email:
            props["email"] = email
        if properties:
            props.update(properties)

        data = await self._request("POST", "/objects/contacts", json={"properties": props})
        lead = self._parse_contact(data)
        logger.info(f"Created HubSpot contact {lead.id}")
        return lead

    async def find_opportunity_by_reference(self, reference: str) -> Optional[CRMOpportunity]:
        results = await self._search(
            "deals", self.TRACE_PROPERTY, reference, ["dealname", "dealstage", self.TRACE_PROPERTY]
        )
        if results:
            return self._parse_deal(results[0])
        return None

    async def create_opportunity(
        self,
        name: str,
        lead_id: str,
        reference: str,
        owner_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None
    ) -> CRMOpportunity:
        props: Dict[str, Any] = {
            "dealname": name,
            "dealstage": self.deal_stage,
            self.TRACE_PROPERTY: reference
        }
        if owner_id:
            props["hubspot_owner_id"] = owner_id
        if properties:
            props.update(properties)

        body = {
            "properties": props,
            "associations": [{
                "to": {"id": lead_id},
                "types": [{
                    "associationCategory": "HUBSPOT_DEFINED",
                    "associationTypeId": self.DEAL_TO_CONTACT_ASSOCIATION
                }]
            }]
        }

        data = await self._request("POST", "/objects/deals", json=body)
        deal = self._parse_deal(data)
        deal.lead_id = lead_id
        logger.info(f"Created HubSpot deal {deal.id} for contact {lead_id}")
        return deal

    def _parse_contact(self, data: Dict[str, Any]) -> CRMLead:
        """Parse HubSpot contact response."""
        props = data.get("properties", {})
        name = " ".join(p for p in (props.get("firstname"), props.get("lastname")) if p)
        return CRMLead(
            id=data.get("id"),
            name=name or None,
            email=props.get("email"),
            phone=props.get("phone"),
            properties=props
        )

    def _parse_deal(self, data: Dict[str, Any]) -> CRMOpportunity:
        """Parse HubSpot deal response."""
        props = data.get("properties", {})
        return CRMOpportunity(
            id=data.get("id"),
            name=props.get("dealname", ""),
            stage=props.get("dealstage"),
            reference=props.get(self.TRACE_PROPERTY),
            properties=props
        )


def _split_name(name: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    if not name or not name.strip():
        return None, None
    parts = name.strip().split(" ", 1)
    return parts[0], (parts[1].strip() if len(parts) > 1 else None)
