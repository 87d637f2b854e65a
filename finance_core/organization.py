"""
Organisation Module

Legal entities and operating units within a tenant. Legal entities carry the
functional currency and the intercompany policy the journal validator enforces.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from .audit import AuditEventType, AuditTrail
from .errors import ConflictError, NotFoundError, ValidationError
from .money import normalize_currency_code
from .rbac import Principal, assert_scope_access
from .storage import StorageInterface, StorageRecord, StorageManager


class EntityStatus(Enum):
    ACTIVE = "ACTIVE"
    INACTIVE = "INACTIVE"


@dataclass
class LegalEntity(StorageRecord):
    """Bookkeeping-independent company or branch"""
    code: str
    name: str
    functional_currency_code: str
    country_code: Optional[str] = None
    is_intercompany_enabled: bool = True
    intercompany_partner_required: bool = False
    status: EntityStatus = EntityStatus.ACTIVE


@dataclass
class OperatingUnit(StorageRecord):
    """Branch, store or department inside one legal entity"""
    legal_entity_id: str
    code: str
    name: str
    has_subledger: bool = False
    is_active: bool = True


def _normalize_code(code: str, field_name: str = "code") -> str:
    normalized = (code or "").strip().upper()
    if not normalized:
        raise ValidationError(f"{field_name} is required")
    return normalized


class OrganizationManager:
    """CRUD for legal entities and operating units"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.records = StorageManager(storage)
        self.audit_trail = audit_trail
        self.legal_entities_table = "legal_entities"
        self.operating_units_table = "operating_units"

    def create_legal_entity(
        self,
        code: str,
        name: str,
        functional_currency_code: str,
        country_code: Optional[str] = None,
        is_intercompany_enabled: bool = True,
        intercompany_partner_required: bool = False,
        principal: Optional[Principal] = None,
    ) -> LegalEntity:
        code = _normalize_code(code)
        currency = normalize_currency_code(functional_currency_code, "functionalCurrencyCode")

        with self.storage.atomic():
            if self.records.find_one(LegalEntity, self.legal_entities_table, {'code': code}):
                raise ConflictError(f"Legal entity code already exists: {code}")

            now = datetime.now(timezone.utc)
            entity = LegalEntity(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                code=code,
                name=name,
                functional_currency_code=currency,
                country_code=country_code,
                is_intercompany_enabled=is_intercompany_enabled,
                intercompany_partner_required=intercompany_partner_required,
            )
            self.records.save_record(entity, self.legal_entities_table)
            self.audit_trail.log_event(
                AuditEventType.LEGAL_ENTITY_CREATED, "legal_entity", entity.id,
                {"code": code, "functionalCurrencyCode": currency},
                user_id=principal.user_id if principal else None,
            )
        return entity

    def get_legal_entity(self, legal_entity_id: str) -> Optional[LegalEntity]:
        return self.records.load_record(LegalEntity, self.legal_entities_table, legal_entity_id)

    def require_legal_entity(self, legal_entity_id: str,
                             field_name: str = "legalEntityId") -> LegalEntity:
        entity = self.get_legal_entity(legal_entity_id) if legal_entity_id else None
        if entity is None:
            raise NotFoundError(f"{field_name} not found for tenant",
                                details={field_name: legal_entity_id})
        return entity

    def list_legal_entities(self, principal: Optional[Principal] = None) -> List[LegalEntity]:
        entities = self.records.find_records(LegalEntity, self.legal_entities_table, {})
        if principal is not None:
            entities = [e for e in entities if principal.can_access_legal_entity(e.id)]
        return sorted(entities, key=lambda e: e.code)

    def update_intercompany_policy(
        self,
        legal_entity_id: str,
        is_intercompany_enabled: Optional[bool] = None,
        intercompany_partner_required: Optional[bool] = None,
        principal: Optional[Principal] = None,
    ) -> LegalEntity:
        assert_scope_access(principal, [legal_entity_id])
        with self.storage.atomic():
            entity = self.require_legal_entity(legal_entity_id)
            if is_intercompany_enabled is not None:
                entity.is_intercompany_enabled = is_intercompany_enabled
            if intercompany_partner_required is not None:
                entity.intercompany_partner_required = intercompany_partner_required
            if entity.intercompany_partner_required and not entity.is_intercompany_enabled:
                raise ValidationError(
                    "intercompanyPartnerRequired cannot be true when intercompany is disabled"
                )
            entity.touch()
            self.records.save_record(entity, self.legal_entities_table)
            self.audit_trail.log_event(
                AuditEventType.INTERCOMPANY_POLICY_UPDATED, "legal_entity", entity.id,
                {
                    "isIntercompanyEnabled": entity.is_intercompany_enabled,
                    "intercompanyPartnerRequired": entity.intercompany_partner_required,
                },
                user_id=principal.user_id if principal else None,
            )
        return entity

    def create_operating_unit(
        self,
        legal_entity_id: str,
        code: str,
        name: str,
        has_subledger: bool = False,
        principal: Optional[Principal] = None,
    ) -> OperatingUnit:
        code = _normalize_code(code)
        assert_scope_access(principal, [legal_entity_id])

        with self.storage.atomic():
            self.require_legal_entity(legal_entity_id)
            if self.records.find_one(OperatingUnit, self.operating_units_table,
                                     {'legal_entity_id': legal_entity_id, 'code': code}):
                raise ConflictError(f"Operating unit code already exists: {code}")

            now = datetime.now(timezone.utc)
            unit = OperatingUnit(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                legal_entity_id=legal_entity_id,
                code=code,
                name=name,
                has_subledger=has_subledger,
            )
            self.records.save_record(unit, self.operating_units_table)
            self.audit_trail.log_event(
                AuditEventType.OPERATING_UNIT_CREATED, "operating_unit", unit.id,
                {"legalEntityId": legal_entity_id, "code": code, "hasSubledger": has_subledger},
                user_id=principal.user_id if principal else None,
            )
        return unit

    def get_operating_unit(self, unit_id: str) -> Optional[OperatingUnit]:
        return self.records.load_record(OperatingUnit, self.operating_units_table, unit_id)

    def list_operating_units(self, legal_entity_id: Optional[str] = None) -> List[OperatingUnit]:
        filters = {'legal_entity_id': legal_entity_id} if legal_entity_id else {}
        units = self.records.find_records(OperatingUnit, self.operating_units_table, filters)
        return sorted(units, key=lambda u: u.code)
