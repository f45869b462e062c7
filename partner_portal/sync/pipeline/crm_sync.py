"""
CRM entity syncs: partner accounts, contacts and leads.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterator, Mapping

from partner_portal.models import Contact, Lead, LmsUser, Partner, SyncRun

from ..adapters.http import Page
from ..utils import parse_api_datetime
from .base import EntitySyncJob
from .reconciler import SourceRecord, UpsertReconciler
from .run_service import RunCounters

VALID_TIERS = ("Premier", "Premier Plus", "Certified", "Registered", "Aggregator")
EXCLUDED_ACCOUNT_STATUSES = ("inactive",)
ACTIVE_CONTACT_STATUS = "active"

_VALID_TIERS_LOWER = {tier.lower(): tier for tier in VALID_TIERS}


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class _CrmJob(EntitySyncJob):
    source = "crm"
    key_fields = ("crm_id",)

    def _load_partner_names(self) -> dict[str, int]:
        rows = self.session.query(Partner.id, Partner.account_name).filter(Partner.is_active.is_(True)).all()
        return {name.strip().lower(): partner_id for partner_id, name in rows if name}

    def _partner_for(self, account_name: str | None) -> int | None:
        if not account_name:
            return None
        return self._partners_by_name.get(account_name.strip().lower())


class PartnersSync(_CrmJob):
    """
    Partner accounts. Only valid partner tiers are kept and inactive accounts
    are skipped; ``parentAccountId`` links are resolved into
    ``parent_partner_id`` and ``partner_family`` after all pages are written.
    """

    entity = "partners"
    model = Partner

    def fetch_pages(self, since: datetime | None) -> Iterator[Page]:
        return self.fetcher.iter_accounts(since=since)

    def transform(self, item: Mapping[str, Any]) -> SourceRecord | None:
        name = _text(item.get("name"))
        if not name:
            return None
        status = _text(item.get("account_Status__cf"))
        if status and status.lower() in EXCLUDED_ACCOUNT_STATUSES:
            return None
        tier = _VALID_TIERS_LOWER.get((_text(item.get("partner_Tier__cf")) or "").lower())
        if tier is None:
            return None
        parent_id = item.get("parentAccountId")
        return SourceRecord(
            values={
                "crm_id": str(item["id"]),
                "account_name": name,
                "tier": tier,
                "account_status": status,
                "partner_type": _text(item.get("partner_Type__cf")),
                "region": _text(item.get("region")) or _text(item.get("mailingCountry")),
                "owner": _text(item.get("account_Owner__cf")),
                "owner_email": _text(item.get("account_Owner_Email__cf")),
                "website": _text(item.get("website")),
                "salesforce_id": _text(item.get("crmId")),
                "crm_parent_id": str(parent_id) if parent_id not in (None, "", 0) else None,
                "crm_updated_at": parse_api_datetime(item.get("updated")),
            },
            updated_at=parse_api_datetime(item.get("updated")),
            label=name,
        )

    def finalize(self, run: SyncRun, counters: RunCounters, mode: str) -> None:
        linked = resolve_partner_families(self.session.query(Partner).all())
        self.session.commit()
        counters.bump("partners_linked", linked)


def resolve_partner_families(partners: list[Partner]) -> int:
    """
    Point each partner at its CRM parent and name its family after the root
    account. Partners outside any hierarchy get no family. Returns the
    number of partners with a resolved parent.
    """
    by_crm_id = {partner.crm_id: partner for partner in partners}
    parent_ids = {partner.crm_parent_id for partner in partners if partner.crm_parent_id}
    linked = 0
    for partner in partners:
        parent = by_crm_id.get(partner.crm_parent_id) if partner.crm_parent_id else None
        if parent is partner:
            parent = None
        new_parent_id = parent.id if parent is not None else None
        if partner.parent_partner_id != new_parent_id:
            partner.parent_partner_id = new_parent_id
        if parent is not None:
            linked += 1

        in_hierarchy = parent is not None or partner.crm_id in parent_ids
        family = _family_root(partner, by_crm_id).account_name if in_hierarchy else None
        if partner.partner_family != family:
            partner.partner_family = family
    return linked


def _family_root(partner: Partner, by_crm_id: Mapping[str, Partner]) -> Partner:
    seen = {partner.crm_id}
    current = partner
    while current.crm_parent_id:
        parent = by_crm_id.get(current.crm_parent_id)
        if parent is None or parent.crm_id in seen:
            break
        seen.add(parent.crm_id)
        current = parent
    return current


class ContactsSync(_CrmJob):
    """
    Active contacts outside the excluded email domains. ``partner_id`` comes
    from the account name; ``lms_user_id`` is kept once set and otherwise
    filled by matching the contact's email to an LMS user.
    """

    entity = "contacts"
    model = Contact

    def prepare(self, run: SyncRun, mode: str) -> None:
        self._partners_by_name = self._load_partner_names()
        domains = self.config.get("CRM_EXCLUDED_EMAIL_DOMAINS") or ()
        self._excluded_domains = {domain.strip().lower().lstrip("@") for domain in domains if domain}

    def build_reconciler(self, run: SyncRun) -> UpsertReconciler:
        return UpsertReconciler(
            Contact,
            entity_type=self.entity,
            sync_type=self.sync_type,
            key_fields=self.key_fields,
            fill_only=("lms_user_id",),
            session=self.session,
            run=run,
            failures=self.failures,
            logger=self.logger,
            clock=self.clock,
        )

    def fetch_pages(self, since: datetime | None) -> Iterator[Page]:
        return self.fetcher.iter_contacts(since=since)

    def transform(self, item: Mapping[str, Any]) -> SourceRecord | None:
        status = (_text(item.get("contact_Status__cf")) or "").lower()
        if status != ACTIVE_CONTACT_STATUS:
            return None
        email = (_text(item.get("email")) or "").lower() or None
        if email is None or "@" not in email:
            return None
        if email.rsplit("@", 1)[1] in self._excluded_domains:
            return None
        account_name = _text(item.get("accountName"))
        first_name = _text(item.get("firstName"))
        last_name = _text(item.get("lastName"))
        return SourceRecord(
            values={
                "crm_id": str(item["id"]),
                "email": email,
                "first_name": first_name,
                "last_name": last_name,
                "title": _text(item.get("title")),
                "phone": _text(item.get("phone")),
                "account_name": account_name,
                "partner_id": self._partner_for(account_name),
                "lms_user_id": self._lms_user_for(email),
                "crm_updated_at": parse_api_datetime(item.get("updated")),
            },
            updated_at=parse_api_datetime(item.get("updated")),
            label=" ".join(filter(None, (first_name, last_name))) or email,
        )

    def _lms_user_for(self, email: str) -> str | None:
        row = self.session.query(LmsUser.id).filter(LmsUser.email == email).first()
        return row[0] if row else None


class LeadsSync(_CrmJob):
    entity = "leads"
    model = Lead

    def prepare(self, run: SyncRun, mode: str) -> None:
        self._partners_by_name = self._load_partner_names()

    def fetch_pages(self, since: datetime | None) -> Iterator[Page]:
        return self.fetcher.iter_leads(since=since)

    def transform(self, item: Mapping[str, Any]) -> SourceRecord:
        account_name = _text(item.get("accountName")) or _text(item.get("company"))
        email = _text(item.get("email"))
        return SourceRecord(
            values={
                "crm_id": str(item["id"]),
                "email": email.lower() if email else None,
                "first_name": _text(item.get("firstName")),
                "last_name": _text(item.get("lastName")),
                "company": _text(item.get("company")),
                "status": _text(item.get("status")),
                "source": _text(item.get("leadSource")),
                "partner_id": self._partner_for(account_name),
                "crm_updated_at": parse_api_datetime(item.get("updated")),
            },
            updated_at=parse_api_datetime(item.get("updated")),
            label=email,
        )
