"""Tests for the source clients.

Upstream answers are served by ``httpx.MockTransport`` handlers.
"""

import asyncio
import json
import tempfile
from datetime import date
from decimal import Decimal
from pathlib import Path

import httpx
import pytest

from registry_hub.core.data_models import (
    Capital,
    CompanyRecord,
    QueryMode,
    SourceQuery,
    SourceStatus,
)
from registry_hub.core.errors import ErrorKind
from registry_hub.core.rate_limiter import InMemorySlidingWindow, RateLimiter
from registry_hub.sources.base import (
    BaseSourceClient,
    ParseOutcome,
    SourceConfig,
    decode_embedded,
)
from registry_hub.sources.bodacc import BodaccClient, registry_id_from_registre
from registry_hub.sources.local import LocalStoreSource
from registry_hub.sources.rne import RneClient
from registry_hub.sources.sirene import SireneClient, denomination, format_address
from registry_hub.storage.database import Database

SEARCH = SourceQuery(text="danone")
BY_ID = SourceQuery(registry_id="552032534")
DETAIL = SourceQuery(registry_id="552032534", mode=QueryMode.DETAIL)


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


SIRENE_ETABLISSEMENT = {
    "siren": "552032534",
    "siret": "55203253400646",
    "etablissementSiege": True,
    "uniteLegale": {
        "denominationUniteLegale": "DANONE",
        "categorieJuridiqueUniteLegale": "5599",
        "etatAdministratifUniteLegale": "A",
        "activitePrincipaleUniteLegale": "70.10Z",
        "trancheEffectifsUniteLegale": "52",
        "dateCreationUniteLegale": "1955-01-01",
    },
    "adresseEtablissement": {
        "numeroVoieEtablissement": "17",
        "typeVoieEtablissement": "BD",
        "libelleVoieEtablissement": "HAUSSMANN",
        "codePostalEtablissement": "75009",
        "libelleCommuneEtablissement": "PARIS",
    },
}

SIRENE_SECONDARY = {
    "siren": "552032534",
    "siret": "55203253400059",
    "etablissementSiege": False,
    "etatAdministratifEtablissement": "F",
    "uniteLegale": SIRENE_ETABLISSEMENT["uniteLegale"],
    "adresseEtablissement": {"codePostalEtablissement": "69001", "libelleCommuneEtablissement": "LYON"},
}


class SlowClient(BaseSourceClient):
    async def _fetch(self, query):
        await asyncio.sleep(1)
        return ParseOutcome()


class ListClient(BaseSourceClient):
    """Parses a fixed list of items; items without a name break the parser."""

    def __init__(self, items):
        super().__init__(SourceConfig(name="list", timeout=1.0))
        self.items = items

    async def _fetch(self, query):
        outcome = ParseOutcome()
        for item in self.items:
            self._collect(outcome, lambda: self._record(item), item.get("id"))
        return outcome

    def _record(self, item):
        name = item["name"].strip()
        return CompanyRecord.build(self.name, item["id"], legal_name=name), False


class TestHelpers:
    """Tests for payload helpers."""

    def test_decode_embedded(self):
        """Test embedded JSON strings are decoded or flagged as malformed."""
        assert decode_embedded('{"a": 1}') == ({"a": 1}, False)
        assert decode_embedded({"a": 1}) == ({"a": 1}, False)
        assert decode_embedded("") == (None, False)
        assert decode_embedded("{broken") == (None, True)
        assert decode_embedded(12) == (None, True)

    def test_registry_id_from_registre(self):
        """Test the bulletin's registre field variants."""
        assert registry_id_from_registre("820 026 490,820026490") == "820026490"
        assert registry_id_from_registre(["820 026 490", "820026490"]) == "820026490"
        assert registry_id_from_registre("RCS Paris 820 026 490") == "820026490"
        assert registry_id_from_registre(None) is None

    def test_denomination_fallback(self):
        """Test the name fallback chain ends with person names."""
        assert denomination({"denominationUniteLegale": "DANONE", "sigleUniteLegale": "BSN"}) == "DANONE"
        assert denomination({"sigleUniteLegale": "BSN"}) == "BSN"
        assert denomination({"prenom1UniteLegale": "Jean", "nomUniteLegale": "DUPONT"}) == "Jean DUPONT"
        assert denomination({}) is None

    def test_format_address(self):
        """Test address parts are joined in order."""
        assert format_address(SIRENE_ETABLISSEMENT["adresseEtablissement"]) == "17 BD HAUSSMANN 75009 PARIS"
        assert format_address(None) is None


class TestBaseSourceClient:
    """Tests for the shared fetch behaviour."""

    def _bodacc(self, handler, **kwargs) -> BodaccClient:
        config = SourceConfig(name="bodacc", base_url="https://bodacc.test", timeout=1.0)
        return BodaccClient(config, client=_client(handler), **kwargs)

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "status,kind",
        [
            (400, ErrorKind.VALIDATION),
            (429, ErrorKind.RATE_LIMITED),
            (500, ErrorKind.UPSTREAM_UNAVAILABLE),
            (403, ErrorKind.UPSTREAM_UNAVAILABLE),
        ],
    )
    async def test_status_becomes_failed_result(self, status, kind):
        """Test HTTP errors become failed results instead of exceptions."""
        client = self._bodacc(lambda request: httpx.Response(status))
        result = await client.fetch(SEARCH)

        assert result.status is SourceStatus.FAILED
        assert result.error.kind is kind
        assert result.error.status_code == status
        assert result.records == []

    @pytest.mark.asyncio
    async def test_not_found_is_empty_ok(self):
        """Test a 404 is an empty answer, not a failure."""
        client = self._bodacc(lambda request: httpx.Response(404))
        result = await client.fetch(BY_ID)

        assert result.status is SourceStatus.OK
        assert result.records == []
        assert result.error.kind is ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_non_json_body(self):
        """Test an HTML error page is an upstream failure."""
        client = self._bodacc(lambda request: httpx.Response(200, text="<html>maintenance</html>"))
        result = await client.fetch(SEARCH)

        assert result.error.kind is ErrorKind.UPSTREAM_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_transport_timeout(self):
        """Test httpx timeouts are classified as timeouts."""

        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        result = await self._bodacc(handler).fetch(SEARCH)
        assert result.error.kind is ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_per_source_timeout(self):
        """Test the configured timeout bounds the whole call."""
        client = SlowClient(SourceConfig(name="slow", timeout=0.01))
        result = await client.fetch(SEARCH)

        assert result.status is SourceStatus.FAILED
        assert result.error.kind is ErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_rate_limited_without_network(self):
        """Test an exhausted limiter fails the call before any request."""
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"results": []})

        limiter = RateLimiter(backend=InMemorySlidingWindow(), max_requests=1)
        client = self._bodacc(handler, rate_limiter=limiter)
        client.config.acquire_wait = 0.0

        first = await client.fetch(SourceQuery(text="danone", caller="alice"))
        second = await client.fetch(SourceQuery(text="danone", caller="alice"))
        other = await client.fetch(SourceQuery(text="danone", caller="bob"))

        assert first.status is SourceStatus.OK
        assert second.error.kind is ErrorKind.RATE_LIMITED
        assert other.status is SourceStatus.OK
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_unreadable_item_skipped(self):
        """Test an item that breaks the parser does not fail the other items."""
        client = ListClient(
            [
                {"id": "552032534", "name": 1000},
                {"id": "775670417"},
                {"id": "820026490", "name": " DOCTOLIB "},
            ]
        )
        result = await client.fetch(SEARCH)

        assert result.status is SourceStatus.PARTIAL
        assert result.malformed == 2
        assert result.error is None
        assert [r.legal_name for r in result.records] == ["DOCTOLIB"]

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        """Test cancelling a fetch cancels the call."""
        client = SlowClient(SourceConfig(name="slow", timeout=5.0))
        task = asyncio.create_task(client.fetch(SEARCH))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task


class TestSireneClient:
    """Tests for the national register client."""

    def _make(self, handler, **kwargs) -> SireneClient:
        config = SourceConfig(name="sirene", base_url="https://sirene.test", timeout=1.0)
        kwargs.setdefault("consumer_key", "key")
        kwargs.setdefault("consumer_secret", "secret")
        return SireneClient(
            config, client=_client(handler), token_url="https://sirene.test/token", **kwargs
        )

    @pytest.mark.asyncio
    async def test_search_by_name(self):
        """Test a name search and its normalization."""
        requests = []

        def handler(request):
            requests.append(request)
            if request.url.path == "/token":
                assert request.headers["Authorization"].startswith("Basic ")
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
            assert request.headers["Authorization"] == "Bearer tok"
            return httpx.Response(
                200, json={"etablissements": [SIRENE_ETABLISSEMENT, {"siret": "", "uniteLegale": {}}]}
            )

        result = await self._make(handler).fetch(SEARCH)

        assert result.status is SourceStatus.OK
        assert result.dropped == 1
        record = result.records[0]
        assert record.registry_id == "552032534"
        assert record.legal_name == "DANONE"
        assert record.legal_form == "SA à conseil d'administration"
        assert record.headcount_band == "5 000 à 9 999 salariés"
        assert record.registered_address == "17 BD HAUSSMANN 75009 PARIS"
        assert record.creation_date == date(1955, 1, 1)
        assert record.active is True
        assert "sirene" in record.source_breakdown
        assert requests[-1].url.params["q"] == 'denominationUniteLegale:"danone"'

    @pytest.mark.asyncio
    async def test_token_cached(self):
        """Test the token endpoint is called once for several requests."""
        token_calls = []

        def handler(request):
            if request.url.path == "/token":
                token_calls.append(request)
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 3600})
            return httpx.Response(200, json={"etablissements": []})

        client = self._make(handler)
        await client.fetch(SEARCH)
        await client.fetch(BY_ID)

        assert len(token_calls) == 1

    @pytest.mark.asyncio
    async def test_missing_credentials(self):
        """Test the client fails cleanly without credentials."""
        client = self._make(lambda request: httpx.Response(500), consumer_key="", consumer_secret="")
        result = await client.fetch(SEARCH)

        assert result.error.kind is ErrorKind.UPSTREAM_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_detail_lists_establishments(self):
        """Test detail mode attaches every establishment to the headquarters record."""

        def handler(request):
            assert request.url.params["q"] == "siren:552032534"
            return httpx.Response(
                200, json={"etablissements": [SIRENE_SECONDARY, SIRENE_ETABLISSEMENT]}
            )

        result = await self._make(handler, access_token="static").fetch(DETAIL)

        assert len(result.records) == 1
        record = result.records[0]
        assert record.establishment_id == "55203253400646"
        assert {e.establishment_id for e in record.establishments} == {
            "55203253400646",
            "55203253400059",
        }
        closed = next(e for e in record.establishments if e.establishment_id.endswith("00059"))
        assert closed.active is False
        assert "establishments" in record.source_breakdown["sirene"]


class TestBodaccClient:
    """Tests for the legal announcements client."""

    PAYLOAD = {
        "results": [
            {
                "id": "A-1",
                "registre": "552 032 534,552032534",
                "commercant": "DANONE",
                "dateparution": "2024-03-01",
                "familleavis_lib": "Dépôts des comptes",
                "tribunal": "GREFFE DU TRIBUNAL DE COMMERCE DE PARIS",
                "listepersonnes": json.dumps(
                    {
                        "personne": {
                            "denomination": "DANONE",
                            "formeJuridique": "Société anonyme",
                            "capital": {"montantCapital": "168514140", "devise": "EUR"},
                            "adresseSiegeSocial": {
                                "numeroVoie": "17",
                                "typeVoie": "BD",
                                "nomVoie": "HAUSSMANN",
                                "codePostal": "75009",
                                "ville": "PARIS",
                            },
                        }
                    }
                ),
                "depot": json.dumps({"typeDepot": "Comptes annuels", "dateCloture": "2023-12-31"}),
            },
            {
                "id": "A-2",
                "registre": "775670417",
                "commercant": "MICHELIN",
                "listepersonnes": "{not valid json",
            },
            {"id": "A-3", "commercant": "NO IDENTIFIER"},
        ]
    }

    def _make(self, handler) -> BodaccClient:
        config = SourceConfig(name="bodacc", base_url="https://bodacc.test", timeout=1.0)
        return BodaccClient(config, client=_client(handler))

    @pytest.mark.asyncio
    async def test_malformed_embedded_json_isolated(self):
        """Test one malformed record does not stop the others."""
        result = await self._make(lambda request: httpx.Response(200, json=self.PAYLOAD)).fetch(SEARCH)

        assert result.status is SourceStatus.PARTIAL
        assert result.malformed == 1
        assert result.dropped == 1
        assert [r.registry_id for r in result.records] == ["552032534", "775670417"]

        danone, michelin = result.records
        assert danone.capital == Capital(Decimal("168514140"), "EUR")
        assert danone.legal_form == "Société anonyme"
        assert danone.registered_address == "17 BD HAUSSMANN 75009 PARIS"
        assert michelin.legal_name == "MICHELIN"
        assert michelin.capital is None

    @pytest.mark.asyncio
    async def test_unexpected_capital_shape(self):
        """Test a numeric currency code neither fails the call nor loses records."""
        first = dict(
            self.PAYLOAD["results"][0],
            listepersonnes={"personne": {"capital": {"montantCapital": "1000", "devise": 978}}},
        )
        second = {"id": "A-4", "registre": "775670417", "commercant": "MICHELIN"}
        payload = {"results": [first, second]}

        result = await self._make(lambda request: httpx.Response(200, json=payload)).fetch(SEARCH)

        assert result.status is SourceStatus.OK
        assert [r.legal_name for r in result.records] == ["DANONE", "MICHELIN"]
        assert result.records[0].capital == Capital(Decimal("1000"), "EUR")

    @pytest.mark.asyncio
    async def test_query_parameters(self):
        """Test identifier searches filter on the registre field."""
        seen = []

        def handler(request):
            seen.append(request.url.params)
            return httpx.Response(200, json={"results": []})

        await self._make(handler).fetch(BY_ID)
        assert seen[0]["where"] == 'registre like "552032534%"'
        assert seen[0]["order_by"] == "dateparution desc"

    @pytest.mark.asyncio
    async def test_detail_announcements(self):
        """Test detail mode turns each record into an announcement."""
        payload = {"results": [self.PAYLOAD["results"][0]]}
        result = await self._make(lambda request: httpx.Response(200, json=payload)).fetch(DETAIL)

        announcement = result.records[0].announcements[0]
        assert announcement.announcement_id == "A-1"
        assert announcement.published_on == date(2024, 3, 1)
        assert announcement.kind == "Dépôts des comptes"
        assert announcement.description == "Comptes annuels (2023-12-31)"

    def test_nested_records_shape(self):
        """Test the records/record/fields payload shape."""
        client = BodaccClient()
        data = {"records": [{"record": {"id": "X", "fields": {"registre": "552032534"}}}]}
        outcome = client.parse(data, with_announcements=True)

        assert outcome.records[0].announcements[0].announcement_id == "X"


class TestRneClient:
    """Tests for the companies registry client."""

    COMPANY = {
        "siren": "552032534",
        "formality": json.dumps(
            {
                "siren": "552032534",
                "content": json.dumps(
                    {
                        "personneMorale": {
                            "identite": {
                                "entreprise": {
                                    "denomination": "DANONE",
                                    "formeJuridique": "5599",
                                    "codeApe": "7010Z",
                                    "dateImmat": "1955-01-01",
                                },
                                "description": {
                                    "montantCapital": 168514140,
                                    "deviseCapital": "EUR",
                                    "sigle": "BSN",
                                },
                            },
                            "adresseEntreprise": {
                                "adresse": {
                                    "numVoie": "17",
                                    "typeVoie": "BD",
                                    "voie": "HAUSSMANN",
                                    "codePostal": "75009",
                                    "commune": "PARIS",
                                }
                            },
                        }
                    }
                ),
            }
        ),
    }

    ATTACHMENTS = {
        "actes": [
            {"id": "ACT1", "dateDepot": "2023-05-01", "typeRdd": [{"typeActe": "Statuts mis à jour"}]},
            {"dateDepot": "2023-05-01"},
        ],
        "bilans": [{"id": "BIL1", "dateCloture": "2022-12-31", "dateDepot": "2023-04-01"}],
    }

    def _make(self, handler, token: str = "tok") -> RneClient:
        config = SourceConfig(name="rne", base_url="https://rne.test", timeout=1.0)
        return RneClient(config, client=_client(handler), token=token)

    @pytest.mark.asyncio
    async def test_embedded_formality_decoded(self):
        """Test string-typed formality and content fields are parsed."""

        def handler(request):
            assert request.headers["Authorization"] == "Bearer tok"
            assert request.url.path == "/companies/552032534"
            return httpx.Response(200, json=self.COMPANY)

        result = await self._make(handler).fetch(BY_ID)

        assert result.status is SourceStatus.OK
        record = result.records[0]
        assert record.legal_name == "DANONE"
        assert record.legal_form == "SA à conseil d'administration"
        assert record.acronym == "BSN"
        assert record.capital == Capital(Decimal("168514140"))
        assert record.registered_address == "17 BD HAUSSMANN 75009 PARIS"

    @pytest.mark.asyncio
    async def test_malformed_formality(self):
        """Test a broken formality string marks the result partial."""
        companies = [{"siren": "552032534", "formality": "{oops"}, {"siren": "123"}]
        result = await self._make(lambda request: httpx.Response(200, json=companies)).fetch(SEARCH)

        assert result.status is SourceStatus.PARTIAL
        assert result.malformed == 1
        assert result.dropped == 1
        assert result.records[0].registry_id == "552032534"

    @pytest.mark.asyncio
    async def test_unexpected_identity_shape(self):
        """Test a company whose identity block is not a mapping is kept and flagged."""
        garbled = {
            "siren": "775670417",
            "formality": {"content": {"personneMorale": {"identite": {"entreprise": "garbled"}}}},
        }
        companies = [garbled, self.COMPANY]
        result = await self._make(lambda request: httpx.Response(200, json=companies)).fetch(SEARCH)

        assert result.status is SourceStatus.PARTIAL
        assert result.malformed == 1
        assert [r.registry_id for r in result.records] == ["775670417", "552032534"]
        assert result.records[0].legal_name is None
        assert result.records[1].legal_name == "DANONE"

    @pytest.mark.asyncio
    async def test_detail_documents(self):
        """Test detail mode adds deposited acts and accounts."""

        def handler(request):
            if request.url.path.endswith("/attachments"):
                return httpx.Response(200, json=self.ATTACHMENTS)
            return httpx.Response(200, json=self.COMPANY)

        result = await self._make(handler).fetch(DETAIL)

        record = result.records[0]
        assert [d.reference for d in record.documents] == ["ACT1", "BIL1"]
        assert record.documents[0].kind == "Statuts mis à jour"
        assert record.documents[1].description == "Comptes clos le 2022-12-31"
        assert "documents" in record.source_breakdown["rne"]

    @pytest.mark.asyncio
    async def test_documents_unavailable_marks_partial(self):
        """Test a failing attachments call keeps the company data."""

        def handler(request):
            if request.url.path.endswith("/attachments"):
                return httpx.Response(503)
            return httpx.Response(200, json=self.COMPANY)

        result = await self._make(handler).fetch(DETAIL)

        assert result.status is SourceStatus.PARTIAL
        assert result.records[0].documents == []

    @pytest.mark.asyncio
    async def test_missing_token(self):
        """Test the client fails cleanly without a token."""
        result = await self._make(lambda request: httpx.Response(200, json={}), token="").fetch(BY_ID)
        assert result.error.kind is ErrorKind.UPSTREAM_UNAVAILABLE


class TestLocalStoreSource:
    """Tests for the local store source."""

    @pytest.fixture
    def database(self):
        with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
            db_path = f.name
        db = Database(db_path)
        db.upsert_company(
            CompanyRecord(
                registry_id="552032534",
                legal_name="DANONE",
                source_breakdown={"sirene": ["legal_name"]},
            )
        )
        yield db
        Path(db_path).unlink(missing_ok=True)

    @pytest.mark.asyncio
    async def test_lookup_by_id_and_name(self, database):
        """Test both query kinds hit the store."""
        source = LocalStoreSource(database)

        by_id = await source.fetch(BY_ID)
        by_name = await source.fetch(SEARCH)

        assert by_id.records[0].legal_name == "DANONE"
        assert by_name.records[0].registry_id == "552032534"
        assert by_id.records[0].source_breakdown == {"local": ["legal_name"]}

    @pytest.mark.asyncio
    async def test_unknown_company(self, database):
        """Test unknown companies give an empty OK answer."""
        result = await LocalStoreSource(database).fetch(SourceQuery(registry_id="775670417"))
        assert result.status is SourceStatus.OK
        assert result.records == []
