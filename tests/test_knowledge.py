import httpx
import pytest

from querysafe.exceptions import ExternalServiceError, NotFoundError
from querysafe.services.knowledge.store import GlossaryTerm, GoldenQuery, InMemoryKnowledgeStore, PlatformKnowledgeStore
from querysafe.services.sql.generation import GenerationService, PromptContext, build_prompt
from tests.conftest import OTHER_USER_ID, USER_ID
from tests.test_api import HEADERS, app, client  # noqa: F401
from tests.test_generation import ScriptedGenerator


class BrokenKnowledgeStore(InMemoryKnowledgeStore):
    async def find_glossary_terms(self, user_id, question):
        raise ExternalServiceError("Knowledge store unavailable", service_name="platform")

    async def find_golden_queries(self, user_id, question, limit=3):
        raise ExternalServiceError("Knowledge store unavailable", service_name="platform")


@pytest.fixture
async def knowledge() -> InMemoryKnowledgeStore:
    store = InMemoryKnowledgeStore()
    await store.add_glossary_term(USER_ID, "Active customer", "Ordered in the last 30 days", "last_order_at > now() - interval '30 days'")
    await store.add_glossary_term(USER_ID, "Churn", "Cancelled subscription")
    await store.add_golden_query(USER_ID, "How many users signed up last week?", "SELECT COUNT(*) FROM users WHERE created_at > now() - interval '7 days'")
    await store.add_golden_query(USER_ID, "List users by name", "SELECT name FROM users ORDER BY name")
    return store


class TestInMemoryKnowledgeStore:
    async def test_glossary_terms_match_plural_words(self, knowledge):
        terms = await knowledge.find_glossary_terms(USER_ID, "How many active customers do we have?")

        assert [term.term for term in terms] == ["Active customer"]

    async def test_glossary_is_scoped_per_user(self, knowledge):
        assert await knowledge.find_glossary_terms(OTHER_USER_ID, "active customers") == []
        assert await knowledge.list_glossary_terms(OTHER_USER_ID) == []

    async def test_delete_unknown_term(self, knowledge):
        with pytest.raises(NotFoundError):
            await knowledge.delete_glossary_term(USER_ID, "missing")

    async def test_golden_queries_ranked_by_overlap(self, knowledge):
        examples = await knowledge.find_golden_queries(USER_ID, "How many users signed up yesterday?")

        assert examples[0].natural_query == "How many users signed up last week?"
        assert len(examples) == 2

    async def test_golden_query_limit(self, knowledge):
        examples = await knowledge.find_golden_queries(USER_ID, "users", limit=1)

        assert len(examples) == 1

    async def test_stop_words_alone_do_not_match(self, knowledge):
        assert await knowledge.find_golden_queries(USER_ID, "how many of the") == []


class TestPlatformKnowledgeStore:
    async def test_glossary_search_sends_question(self):
        seen = {}

        def handler(request):
            seen["query"] = request.url.params.get("query")
            seen["user"] = request.headers["X-User-ID"]
            return httpx.Response(200, json={"terms": [{"id": "t1", "user_id": USER_ID, "term": "Churn", "definition": "Cancelled"}]})

        store = PlatformKnowledgeStore(base_url="http://platform/api/v1", transport=httpx.MockTransport(handler))
        terms = await store.find_glossary_terms(USER_ID, "churn by month")
        await store.close()

        assert seen == {"query": "churn by month", "user": USER_ID}
        assert terms[0].term == "Churn"

    async def test_golden_examples_are_capped(self):
        examples = [{"natural_query": f"q{i}", "sql_query": "SELECT 1"} for i in range(5)]
        store = PlatformKnowledgeStore(
            base_url="http://platform/api/v1",
            transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"examples": examples})),
        )

        found = await store.find_golden_queries(USER_ID, "anything", limit=3)

        assert [golden.natural_query for golden in found] == ["q0", "q1", "q2"]
        assert all(golden.user_id == USER_ID for golden in found)

    async def test_server_error_is_external_service_error(self):
        store = PlatformKnowledgeStore(
            base_url="http://platform/api/v1",
            transport=httpx.MockTransport(lambda request: httpx.Response(400)),
        )

        with pytest.raises(ExternalServiceError) as exc_info:
            await store.find_glossary_terms(USER_ID, "churn")

        assert exc_info.value.message == "Knowledge store request failed"


class TestPromptSections:
    def test_glossary_and_verified_examples(self):
        context = PromptContext(
            question="Active customers per month",
            schema_text="Table: users",
            dialect="PostgreSQL",
            guidelines="rules",
            glossary=[GlossaryTerm(user_id=USER_ID, term="Active customer", definition="Ordered recently", sql_logic="last_order_at > now() - interval '30 days'")],
            golden_queries=[GoldenQuery(user_id=USER_ID, natural_query="Customers per month", sql_query="SELECT 1")],
        )

        prompt = build_prompt(context)

        assert "BUSINESS GLOSSARY" in prompt
        assert "- Active customer: Ordered recently (SQL logic: `last_order_at > now() - interval '30 days'`)" in prompt
        assert '1. Q: "Customers per month"\n   SQL: SELECT 1' in prompt
        assert prompt.index("BUSINESS GLOSSARY") < prompt.index("VERIFIED EXAMPLES") < prompt.index("USER QUESTION")

    def test_sections_omitted_when_empty(self):
        prompt = build_prompt(PromptContext(question="q", schema_text="s", dialect="d", guidelines="g"))

        assert "BUSINESS GLOSSARY" not in prompt
        assert "VERIFIED EXAMPLES" not in prompt


class TestGenerationContext:
    async def test_prompt_includes_matching_knowledge(self, container, active_connection, knowledge):
        generator = ScriptedGenerator("SELECT COUNT(*) FROM users")
        service = GenerationService(
            container.schema, container.rate_limiter, container.audit, generator=generator, knowledge=knowledge
        )

        outcome = await service.generate(USER_ID, "How many active customers signed up?")

        assert outcome.success
        prompt = generator.prompts[0]
        assert "- Active customer: Ordered in the last 30 days" in prompt
        assert "Churn" not in prompt
        assert 'Q: "How many users signed up last week?"' in prompt

    async def test_lookup_failure_does_not_block_generation(self, container, active_connection):
        generator = ScriptedGenerator("SELECT id FROM users")
        service = GenerationService(
            container.schema,
            container.rate_limiter,
            container.audit,
            generator=generator,
            knowledge=BrokenKnowledgeStore(),
        )

        outcome = await service.generate(USER_ID, "Which users exist?")

        assert outcome.success
        assert "BUSINESS GLOSSARY" not in generator.prompts[0]


class TestKnowledgeEndpoints:
    async def test_glossary_crud(self, client):
        created = await client.post(
            "/api/v1/glossary",
            json={"term": "Churn", "definition": "Cancelled subscription", "sqlLogic": "status = 'cancelled'"},
            headers=HEADERS,
        )
        assert created.status_code == 201
        term = created.json()
        assert term["sql_logic"] == "status = 'cancelled'"

        listed = await client.get("/api/v1/glossary", params={"query": "monthly churn"}, headers=HEADERS)
        assert [item["term"] for item in listed.json()["terms"]] == ["Churn"]

        deleted = await client.delete(f"/api/v1/glossary/{term['id']}", headers=HEADERS)
        assert deleted.status_code == 204
        missing = await client.delete(f"/api/v1/glossary/{term['id']}", headers=HEADERS)
        assert missing.status_code == 404

    async def test_golden_query_save_and_search(self, client):
        saved = await client.post(
            "/api/v1/golden-queries",
            json={"naturalQuery": "Top customers by revenue", "sqlQuery": "SELECT name FROM customers"},
            headers=HEADERS,
        )
        assert saved.status_code == 201

        found = await client.get("/api/v1/golden-queries", params={"query": "customers revenue"}, headers=HEADERS)

        assert found.status_code == 200
        assert found.json()["examples"][0]["sql_query"] == "SELECT name FROM customers"

    async def test_golden_search_requires_query(self, client):
        response = await client.get("/api/v1/golden-queries", headers=HEADERS)

        assert response.status_code == 422
