"""
In-Memory CRM Provider
Stand-in CRM for local runs and tests.
"""
import uuid
from typing import Any, Dict, List, Optional

from leadflow.infrastructure.connectors.crm.base import CRMProvider, CRMLead, CRMOpportunity


class InMemoryCRM(CRMProvider):

    def __init__(self):
        self.leads: Dict[str, CRMLead] = {}
        self.opportunities: Dict[str, CRMOpportunity] = {}
        self.calls: List[str] = []

    @property
    def provider_name(self) -> str:
        return "memory"

    async def check_lead_exists(
        self,
        phone: Optional[str],
        email: Optional[str] = None
    ) -> Optional[CRMLead]:
        self.calls.append("check_lead_exists")
        for lead in self.leads.values():
            if phone and lead.phone == phone:
                return lead
        for lead in self.leads.values():
            if email and lead.email == email:
                return lead
        return None

    async def create_lead(
        self,
        name: Optional[str],
        phone: Optional[str],
        email: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None
    ) -> CRMLead:
        self.calls.append("create_lead")
        lead = CRMLead(
            id=str(uuid.uuid4()),
            name=name,
            phone=phone,
            email=email,
            properties=dict(properties or {})
        )
        self.leads[lead.id] = lead
        return lead

    async def find_opportunity_by_reference(self, reference: str) -> Optional[CRMOpportunity]:
        self.calls.append("find_opportunity_by_reference")
        for opportunity in self.opportunities.values():
            if opportunity.reference == reference:
                return opportunity
        return None

    async def create_opportunity(
        self,
        name: str,
        lead_id: str,
        reference: str,
        owner_id: Optional[str] = None,
        properties: Optional[Dict[str, Any]] = None
    ) -> CRMOpportunity:
        self.calls.append("create_opportunity")
        opportunity = CRMOpportunity(
            id=str(uuid.uuid4()),
            name=name,
            stage="new",
            reference=reference,
            lead_id=lead_id,
            properties={**(properties or {}), "owner_id": owner_id}
        )
        self.opportunities[opportunity.id] = opportunity
        return opportunity
