"""Companies registry client (INPI RNE API).

Company payloads carry the registration file under ``formality``, which
some endpoints return as a JSON string.  Detail lookups also list the
deposited acts and annual accounts as documents.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import httpx

from registry_hub.core.data_models import (
    Capital,
    CompanyRecord,
    Document,
    QueryMode,
    SourceQuery,
    parse_date,
)
from registry_hub.core.errors import (
    ErrorKind,
    SourceError,
    UpstreamUnavailableError,
    to_source_error,
)
from registry_hub.core.rate_limiter import RateLimiter
from registry_hub.sources.base import (
    BaseSourceClient,
    ParseOutcome,
    SourceConfig,
    decode_embedded,
    first_item,
)
from registry_hub.sources.labels import legal_form_label

DEFAULT_BASE_URL = "https://registre-national-entreprises.inpi.fr/api"


def _dig(data: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def _mapping(data: Any, *path: str) -> Dict[str, Any]:
    value = _dig(data, *path)
    return value if isinstance(value, dict) else {}


def _format_address(address: Any) -> Optional[str]:
    if not isinstance(address, dict):
        return None
    parts = [
        address.get("numVoie"),
        address.get("indiceRepetition"),
        address.get("typeVoie"),
        address.get("voie"),
        address.get("complementLocalisation"),
        address.get("codePostal"),
        address.get("commune"),
    ]
    line = " ".join(str(part).strip() for part in parts if part)
    return line or None


class RneClient(BaseSourceClient):
    """Companies registry client."""

    def __init__(
        self,
        config: Optional[SourceConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
        token: str = "",
    ) -> None:
        super().__init__(
            config or SourceConfig(name="rne", base_url=DEFAULT_BASE_URL, timeout=8.0),
            rate_limiter,
            client,
        )
        self.token = token

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            raise UpstreamUnavailableError("registry token not configured", source=self.name)
        return {"Authorization": f"Bearer {self.token}"}

    async def _fetch(self, query: SourceQuery) -> ParseOutcome:
        headers = self._headers()

        if query.is_identifier:
            data = await self._get_json(f"/companies/{query.registry_id}", headers=headers)
            companies = [data]
        else:
            data = await self._get_json(
                "/companies",
                params={
                    "companyName": query.text,
                    "pageSize": min(query.limit, self.config.page_size),
                },
                headers=headers,
            )
            companies = data if isinstance(data, list) else (data or {}).get("results") or []

        outcome = self.parse(companies)

        if query.mode is QueryMode.DETAIL and outcome.records:
            await self._attach_documents(outcome, query.registry_id, headers)
        return outcome

    async def _attach_documents(
        self, outcome: ParseOutcome, registry_id: Optional[str], headers: Dict[str, str]
    ) -> None:
        try:
            data = await self._get_json(f"/companies/{registry_id}/attachments", headers=headers)
        except (httpx.HTTPError, SourceError) as exc:
            error = to_source_error(exc, self.name)
            if error.kind is not ErrorKind.NOT_FOUND:
                outcome.incomplete = True
                self.logger.warning(
                    "Documents of %s unavailable: %s (%s)", registry_id, error.message, error.kind.value
                )
            return

        documents = self.parse_documents(data)
        for record in outcome.records:
            if record.registry_id == registry_id:
                record.documents.extend(documents)
                fields = record.source_breakdown.setdefault(self.name, [])
                if documents and "documents" not in fields:
                    fields.append("documents")

    def parse(self, companies: List[Any]) -> ParseOutcome:
        """Turn company payloads into records."""
        outcome = ParseOutcome()
        for company in companies:
            if not isinstance(company, dict):
                outcome.add(None)
                continue
            self._collect(outcome, lambda: self._record(company), company.get("siren"))
        return outcome

    def _record(self, company: Dict[str, Any]):
        formality, malformed = decode_embedded(company.get("formality"))
        formality = formality if isinstance(formality, dict) else {}

        content, bad_content = decode_embedded(formality.get("content"))
        malformed = malformed or bad_content
        content = content if isinstance(content, dict) else {}

        registry_id = company.get("siren") or formality.get("siren")

        moral = _mapping(content, "personneMorale")
        physical = _mapping(content, "personnePhysique")
        person = moral or physical

        identity = _mapping(person, "identite")
        if any(
            identity.get(key) is not None and not isinstance(identity.get(key), dict)
            for key in ("entreprise", "description")
        ):
            malformed = True
        entreprise = _mapping(identity, "entreprise")
        description = _mapping(identity, "description")

        legal_name = entreprise.get("denomination")
        if not legal_name and physical:
            names = _mapping(physical, "identite", "entrepreneur", "descriptionPersonne")
            given = names.get("prenoms") or []
            if isinstance(given, str):
                given = [given]
            parts = [*given, names.get("nom")]
            legal_name = " ".join(p for p in parts if p) or None

        form_code = entreprise.get("formeJuridique") or formality.get("formeJuridique")
        address = _dig(person, "adresseEntreprise", "adresse")

        record = CompanyRecord.build(
            self.name,
            registry_id,
            legal_name=legal_name,
            legal_form=legal_form_label(form_code),
            activity_code=entreprise.get("codeApe"),
            registered_address=_format_address(address),
            creation_date=parse_date(entreprise.get("dateImmat") or entreprise.get("dateDebutActiv")),
            capital=Capital.parse(description.get("montantCapital"), description.get("deviseCapital")),
            acronym=description.get("sigle"),
        )
        return record, malformed

    def parse_documents(self, data: Any) -> List[Document]:
        """Deposited acts and annual accounts as documents."""
        if not isinstance(data, dict):
            return []

        documents: List[Document] = []
        for acte in data.get("actes") or []:
            if not isinstance(acte, dict):
                continue
            reference = acte.get("id") or acte.get("numeroDepot")
            if not reference:
                continue
            kind = first_item(acte.get("typeRdd")).get("typeActe") or acte.get("typeActe")
            documents.append(
                Document(
                    reference=str(reference),
                    deposited_on=parse_date(acte.get("dateDepot")),
                    kind=kind or "Acte",
                    description=acte.get("nomDocument") or acte.get("description"),
                    url=acte.get("urlDocument") or f"{self.config.base_url}/actes/{reference}/download",
                )
            )

        for bilan in data.get("bilans") or []:
            if not isinstance(bilan, dict) or not bilan.get("id"):
                continue
            closing = bilan.get("dateCloture")
            documents.append(
                Document(
                    reference=str(bilan["id"]),
                    deposited_on=parse_date(bilan.get("dateDepot")),
                    kind="Comptes annuels",
                    description=f"Comptes clos le {closing}" if closing else bilan.get("typeBilan"),
                    url=f"{self.config.base_url}/bilans/{bilan['id']}/download",
                )
            )
        return documents
