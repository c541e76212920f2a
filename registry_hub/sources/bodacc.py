"""Legal announcements bulletin client (BODACC, opendatasoft API).

Several fields of an announcement (``listepersonnes``, ``acte``,
``jugement``, ``depot``, ``listeetablissements``) are JSON documents
serialized into strings.  They are decoded one by one; a field that does
not decode is left out of the record, which is still returned and counted
as malformed.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

import httpx

from registry_hub.core.data_models import (
    Announcement,
    Capital,
    CompanyRecord,
    QueryMode,
    SourceQuery,
    normalize_registry_id,
    parse_date,
)
from registry_hub.core.rate_limiter import RateLimiter
from registry_hub.sources.base import (
    BaseSourceClient,
    ParseOutcome,
    SourceConfig,
    decode_embedded,
    first_item,
)

DEFAULT_BASE_URL = "https://bodacc-datadila.opendatasoft.com/api/v2"
DATASET_PATH = "/catalog/datasets/annonces-commerciales/records"
EMBEDDED_FIELDS = ("listepersonnes", "acte", "jugement", "depot", "listeetablissements")

_REGISTRY_DIGITS_RE = re.compile(r"\d{9}")


def registry_id_from_registre(value: Any) -> Optional[str]:
    """Extract the registry identifier from a ``registre`` field.

    The field reads ``"820 026 490,820026490"`` (printed then compact form)
    or is a list of those two forms.
    """
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        candidates = [str(item) for item in value]
    else:
        candidates = str(value).split(",")

    for candidate in reversed(candidates):
        registry_id = normalize_registry_id(candidate)
        if registry_id:
            return registry_id

    match = _REGISTRY_DIGITS_RE.search(" ".join(candidates).replace(" ", ""))
    return match.group(0) if match else None


def _quote(text: str) -> str:
    return text.replace('"', " ").replace("\\", " ").strip()


def _format_address(address: Any) -> Optional[str]:
    if not isinstance(address, dict):
        return None
    parts = [
        address.get("numeroVoie"),
        address.get("typeVoie"),
        address.get("nomVoie"),
        address.get("complGeographique"),
        address.get("codePostal"),
        address.get("ville"),
    ]
    line = " ".join(str(part).strip() for part in parts if part)
    return line or None


def _describe(embedded: Dict[str, Any], fields: Dict[str, Any]) -> Optional[str]:
    jugement = first_item(embedded.get("jugement"))
    if jugement:
        parts = [jugement.get("nature"), jugement.get("complementJugement")]
        text = " - ".join(str(p).strip() for p in parts if p)
        if text:
            return text
    acte = first_item(embedded.get("acte"))
    if acte.get("descriptif"):
        return str(acte["descriptif"]).strip()
    depot = first_item(embedded.get("depot"))
    if depot.get("typeDepot"):
        closing = depot.get("dateCloture")
        return f"{depot['typeDepot']} ({closing})" if closing else str(depot["typeDepot"])
    return fields.get("familleavis_lib") or fields.get("familleavis")


class BodaccClient(BaseSourceClient):
    """Legal announcements bulletin client."""

    def __init__(
        self,
        config: Optional[SourceConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        super().__init__(
            config or SourceConfig(name="bodacc", base_url=DEFAULT_BASE_URL, timeout=5.0),
            rate_limiter,
            client,
        )

    async def _fetch(self, query: SourceQuery) -> ParseOutcome:
        if query.is_identifier:
            where = f'registre like "{query.registry_id}%"'
        else:
            where = f'commercant like "%{_quote(query.text or "")}%"'

        limit = min(query.limit, self.config.page_size)
        if query.mode is QueryMode.DETAIL:
            limit = max(limit, 50)

        data = await self._get_json(
            DATASET_PATH,
            params={
                "where": where,
                "limit": limit,
                "order_by": "dateparution desc",
                "timezone": "Europe/Paris",
            },
        )
        return self.parse(data, with_announcements=query.mode is QueryMode.DETAIL)

    def parse(self, data: Any, with_announcements: bool = False) -> ParseOutcome:
        """Turn a records payload into company records."""
        outcome = ParseOutcome()
        for fields in self._fields(data):
            self._collect(
                outcome,
                lambda: self._record(fields, with_announcements),
                fields.get("id"),
            )
        return outcome

    @staticmethod
    def _fields(data: Any) -> List[Dict[str, Any]]:
        if not isinstance(data, dict):
            return []
        items = data.get("records")
        if items is None:
            items = data.get("results") or []

        fields_list = []
        for item in items:
            if not isinstance(item, dict):
                continue
            inner = item.get("record", item)
            fields = inner.get("fields", inner) if isinstance(inner, dict) else None
            if isinstance(fields, dict):
                if "id" not in fields and inner.get("id"):
                    fields = dict(fields, id=inner["id"])
                fields_list.append(fields)
        return fields_list

    def _record(self, fields: Dict[str, Any], with_announcements: bool):
        registry_id = registry_id_from_registre(fields.get("registre"))
        if registry_id is None:
            return None, False

        embedded: Dict[str, Any] = {}
        malformed = False
        for name in EMBEDDED_FIELDS:
            value, bad = decode_embedded(fields.get(name))
            if bad:
                malformed = True
                self.logger.debug(
                    "Dropping malformed %s of announcement %s", name, fields.get("id")
                )
            elif value is not None:
                embedded[name] = value

        personnes = embedded.get("listepersonnes")
        person = first_item(personnes.get("personne") if isinstance(personnes, dict) else personnes)
        capital_block = person.get("capital") if isinstance(person.get("capital"), dict) else {}
        etablissements = embedded.get("listeetablissements")
        etablissement = first_item(
            etablissements.get("etablissement") if isinstance(etablissements, dict) else etablissements
        )

        announcements = []
        if with_announcements:
            announcements.append(
                Announcement(
                    announcement_id=str(
                        fields.get("id") or fields.get("numeroannonce") or f"{registry_id}-{fields.get('dateparution')}"
                    ),
                    published_on=parse_date(fields.get("dateparution")),
                    kind=fields.get("familleavis_lib") or fields.get("familleavis"),
                    court=fields.get("tribunal"),
                    description=_describe(embedded, fields),
                    url=fields.get("url_complete"),
                )
            )

        record = CompanyRecord.build(
            self.name,
            registry_id,
            legal_name=fields.get("commercant") or person.get("denomination"),
            legal_form=person.get("formeJuridique"),
            activity_label=etablissement.get("activite") if etablissement else None,
            registered_address=_format_address(person.get("adresseSiegeSocial")),
            capital=Capital.parse(capital_block.get("montantCapital"), capital_block.get("devise")),
            announcements=announcements,
        )
        return record, malformed
