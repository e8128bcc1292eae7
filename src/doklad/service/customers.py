from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.orm import Session

from doklad.db import queries as q
from doklad.db.models import Customer
from doklad.integrations.ares import AresError, AresRecord, AresRegistry, find_embedded_ico
from doklad.utils.logging_setup import log_event

log = logging.getLogger(__name__)


def resolve_customer(
    session: Session,
    company_id: int,
    name: Optional[str],
    *,
    ico: Optional[str] = None,
    registry: AresRegistry | None = None,
) -> Customer:
    """
    Najde zákazníka (IČO, pak přesná/částečná shoda jména); jinak ho založí
    z dat ARES, a když ARES selže nebo nic nenajde, jen se zadaným jménem.
    Selhání registru nikdy neblokuje založení zákazníka.
    """
    name = (name or "").strip()
    ico = ico or find_embedded_ico(name)
    if ico:
        found = q.find_customer_by_ico(session, company_id, ico)
        if found is not None:
            return found
    if name:
        existing = q.search_customers(session, company_id, name)
        if existing:
            return existing[0]

    rec: AresRecord | None = None
    if registry is not None and (ico or name):
        try:
            rec = registry.lookup(ico or name)
        except (AresError, ValueError) as exc:
            log.warning("ARES lookup selhal pro %r: %s", ico or name, exc)
            rec = None
        log_event(log, "ares.lookup", "ARES lookup for new customer", found=rec is not None)

    if rec is not None:
        # ARES mohl vrátit subjekt, který už v adresáři je
        found = q.find_customer_by_ico(session, company_id, rec.ico)
        if found is not None:
            return found
        return q.create_customer(
            session,
            company_id,
            rec.name or name,
            ico=rec.ico,
            dic=rec.dic,
            address=rec.street or rec.address,
            city=rec.city,
            postal_code=rec.postal_code,
        )
    return q.create_customer(session, company_id, name or "Neznámý zákazník", ico=ico)
