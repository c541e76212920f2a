"""National business register client (INSEE Sirene API).

Authentication is OAuth2 client credentials; the access token is cached
until one minute before it expires.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from registry_hub.core.data_models import (
    Capital,
    CompanyRecord,
    Establishment,
    QueryMode,
    SourceQuery,
    normalize_establishment_id,
    parse_date,
    registry_id_from_establishment,
)
from registry_hub.core.errors import UpstreamUnavailableError
from registry_hub.core.rate_limiter import RateLimiter
from registry_hub.sources.base import (
    UNEXPECTED_SHAPE,
    BaseSourceClient,
    ParseOutcome,
    SourceConfig,
)
from registry_hub.sources.labels import headcount_label, legal_form_label

DEFAULT_BASE_URL = "https://api.insee.fr/entreprises/sirene/V3.11"
DEFAULT_TOKEN_URL = "https://api.insee.fr/token"
TOKEN_EXPIRY_MARGIN = 60.0
DETAIL_PAGE_SIZE = 100

_ADDRESS_PARTS = (
    "numeroVoieEtablissement",
    "indiceRepetitionEtablissement",
    "typeVoieEtablissement",
    "libelleVoieEtablissement",
    "complementAdresseEtablissement",
    "codePostalEtablissement",
    "libelleCommuneEtablissement",
    "libellePaysEtrangerEtablissement",
)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def denomination(unite: Dict[str, Any]) -> Optional[str]:
    """Company name with the register's fallback chain.

    Legal name, then acronym, then usual name, then the parts of a natural
    person's name.
    """
    for key in ("denominationUniteLegale", "sigleUniteLegale", "denominationUsuelle1UniteLegale"):
        value = _clean(unite.get(key))
        if value:
            return value

    parts = [
        _clean(unite.get(key))
        for key in (
            "prenom1UniteLegale",
            "prenom2UniteLegale",
            "prenom3UniteLegale",
            "nomUniteLegale",
            "nomUsageUniteLegale",
        )
    ]
    parts = [part for part in parts if part]
    return " ".join(parts) if parts else None


def format_address(address: Optional[Dict[str, Any]]) -> Optional[str]:
    """Single-line postal address of an establishment."""
    if not address:
        return None
    parts = [_clean(address.get(key)) for key in _ADDRESS_PARTS]
    line = " ".join(part for part in parts if part)
    return line or None


def _is_active(state: Any) -> Optional[bool]:
    if state is None:
        return None
    return state == "A"


class SireneClient(BaseSourceClient):
    """National business register client."""

    def __init__(
        self,
        config: Optional[SourceConfig] = None,
        rate_limiter: Optional[RateLimiter] = None,
        client: Optional[httpx.AsyncClient] = None,
        consumer_key: str = "",
        consumer_secret: str = "",
        token_url: str = DEFAULT_TOKEN_URL,
        access_token: Optional[str] = None,
    ) -> None:
        """Initialize the register client.

        Args:
            config: Source configuration
            rate_limiter: Shared outbound rate limiter
            client: HTTP client
            consumer_key: OAuth2 client id
            consumer_secret: OAuth2 client secret
            token_url: OAuth2 token endpoint
            access_token: Pre-issued token (skips the token endpoint)
        """
        super().__init__(
            config or SourceConfig(name="sirene", base_url=DEFAULT_BASE_URL, timeout=10.0),
            rate_limiter,
            client,
        )
        self.consumer_key = consumer_key
        self.consumer_secret = consumer_secret
        self.token_url = token_url
        self._static_token = access_token
        self._access_token: Optional[str] = None
        self._token_expiry = 0.0
        self._token_lock = asyncio.Lock()

    def clear_token(self) -> None:
        self._access_token = None
        self._token_expiry = 0.0

    async def _get_token(self) -> str:
        """Get or refresh the access token."""
        if self._static_token:
            return self._static_token
        if self._access_token and time.monotonic() < self._token_expiry:
            return self._access_token

        if not (self.consumer_key and self.consumer_secret):
            raise UpstreamUnavailableError("register credentials not configured", source=self.name)

        async with self._token_lock:
            if self._access_token and time.monotonic() < self._token_expiry:
                return self._access_token

            client = await self._get_client()
            self.logger.debug("Requesting new access token")
            response = await client.post(
                self.token_url,
                data={"grant_type": "client_credentials"},
                auth=(self.consumer_key, self.consumer_secret),
            )
            response.raise_for_status()
            try:
                payload = response.json()
                token = payload["access_token"]
                expires_in = float(payload.get("expires_in", 3600))
            except (ValueError, KeyError, TypeError) as e:
                raise UpstreamUnavailableError(
                    "token endpoint returned an unusable answer", source=self.name
                ) from e

            self._access_token = token
            self._token_expiry = time.monotonic() + max(0.0, expires_in - TOKEN_EXPIRY_MARGIN)
            self.logger.info("Access token obtained, valid for %.0fs", expires_in)
            return token

    async def _fetch(self, query: SourceQuery) -> ParseOutcome:
        token = await self._get_token()
        headers = {"Authorization": f"Bearer {token}"}

        if query.mode is QueryMode.DETAIL:
            data = await self._get_json(
                "/siret",
                params={"q": f"siren:{query.registry_id}", "nombre": DETAIL_PAGE_SIZE},
                headers=headers,
            )
            return self._parse_detail(data)

        if query.is_identifier:
            q = f"siren:{query.registry_id}"
        else:
            text = (query.text or "").replace('"', " ").strip()
            q = f'denominationUniteLegale:"{text}"'

        data = await self._get_json(
            "/siret",
            params={"q": q, "nombre": min(query.limit, self.config.page_size)},
            headers=headers,
        )
        return self._parse_search(data)

    def _parse_search(self, data: Any) -> ParseOutcome:
        outcome = ParseOutcome()
        for etablissement in self._establishments(data):
            self._collect(
                outcome,
                lambda: (self._record(etablissement), False),
                etablissement.get("siret"),
            )
        return outcome

    def _parse_detail(self, data: Any) -> ParseOutcome:
        outcome = ParseOutcome()
        items = self._establishments(data)
        if not items:
            return outcome

        headquarters = next((item for item in items if item.get("etablissementSiege")), items[0])
        self._collect(
            outcome, lambda: self._detail_record(headquarters, items), headquarters.get("siret")
        )
        return outcome

    def _detail_record(
        self, headquarters: Dict[str, Any], items: List[Dict[str, Any]]
    ) -> Tuple[Optional[CompanyRecord], bool]:
        record = self._record(headquarters)
        if record is None:
            return None, False

        malformed = False
        for item in items:
            try:
                establishment = self._establishment(item)
            except UNEXPECTED_SHAPE as exc:
                self.logger.debug(
                    "Skipping unreadable establishment %s: %s", item.get("siret"), exc
                )
                malformed = True
                continue
            if establishment is None:
                continue
            if registry_id_from_establishment(establishment.establishment_id) == record.registry_id:
                record.establishments.append(establishment)

        record.source_breakdown = {self.name: record.present_fields()}
        return record, malformed

    @staticmethod
    def _establishments(data: Any) -> List[Dict[str, Any]]:
        if not isinstance(data, dict):
            return []
        items = data.get("etablissements") or []
        return [item for item in items if isinstance(item, dict)]

    def _establishment(self, item: Dict[str, Any]) -> Optional[Establishment]:
        establishment_id = normalize_establishment_id(item.get("siret"))
        if establishment_id is None:
            return None
        return Establishment(
            establishment_id=establishment_id,
            address=format_address(item.get("adresseEtablissement")),
            active=_is_active(
                item.get("etatAdministratifEtablissement")
                or _latest_period(item).get("etatAdministratifEtablissement")
            ),
            headquarters=bool(item.get("etablissementSiege")),
            creation_date=parse_date(item.get("dateCreationEtablissement")),
        )

    def _record(self, item: Dict[str, Any]) -> Optional[CompanyRecord]:
        unite = item.get("uniteLegale")
        unite = unite if isinstance(unite, dict) else {}
        registry_id = (
            unite.get("siren")
            or item.get("siren")
            or registry_id_from_establishment(item.get("siret"))
        )
        category = _clean(unite.get("categorieJuridiqueUniteLegale"))

        return CompanyRecord.build(
            self.name,
            registry_id,
            legal_name=denomination(unite),
            establishment_id=normalize_establishment_id(item.get("siret")),
            legal_form=legal_form_label(category),
            activity_code=_clean(unite.get("activitePrincipaleUniteLegale")),
            registered_address=format_address(item.get("adresseEtablissement")),
            creation_date=parse_date(unite.get("dateCreationUniteLegale")),
            active=_is_active(unite.get("etatAdministratifUniteLegale")),
            capital=Capital.parse(unite.get("capitalSocialUniteLegale")),
            headcount_band=headcount_label(unite.get("trancheEffectifsUniteLegale")),
            acronym=_clean(unite.get("sigleUniteLegale")),
        )


def _latest_period(item: Dict[str, Any]) -> Dict[str, Any]:
    periods = item.get("periodesEtablissement") or []
    if periods and isinstance(periods[0], dict):
        return periods[0]
    return {}
