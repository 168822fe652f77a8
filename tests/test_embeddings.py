import httpx
import pytest
from unittest.mock import AsyncMock, patch

from services.embeddings import Embeddings


@pytest.fixture
def hashing():
    return Embeddings(provider="hashing", dim=64)


@pytest.mark.asyncio
async def test_empty_text_returns_none_without_calling_model(hashing):
    with patch.object(hashing, "_encode", new=AsyncMock()) as encode:
        assert await hashing.embed("") is None
        assert await hashing.embed("   \n\t") is None
        assert await hashing.embed(None) is None
        encode.assert_not_called()


@pytest.mark.asyncio
async def test_long_input_is_truncated_before_encoding(hashing):
    with patch.object(hashing, "_encode", new=AsyncMock(return_value=[[0.5] * 64])) as encode:
        vector = await hashing.embed("x" * 9000)

    sent = encode.call_args.args[0]
    assert len(sent) == 1
    assert len(sent[0]) == 8000
    assert vector == [0.5] * 64


@pytest.mark.asyncio
async def test_dimension_does_not_depend_on_input_length(hashing):
    short = await hashing.embed("sourdough")
    long = await hashing.embed("sourdough bread starter " * 2000)

    assert len(short) == 64
    assert len(long) == 64


@pytest.mark.asyncio
async def test_hashing_provider_is_deterministic_and_similar_for_shared_words(hashing):
    from services.search_adapter import cosine_similarity

    a = await hashing.embed("baking sourdough bread at home")
    b = await hashing.embed("baking sourdough bread at home")
    c = await hashing.embed("quarterly revenue forecast meeting")

    assert a == b
    assert cosine_similarity(a, b) == pytest.approx(1.0)
    assert cosine_similarity(a, c) < 0.5


@pytest.mark.asyncio
async def test_batch_preserves_order_and_length(hashing):
    texts = ["alpha topic", "", "   ", "beta topic"]
    vectors = await hashing.embed_batch(texts)

    assert len(vectors) == 4
    assert vectors[1] is None
    assert vectors[2] is None
    assert vectors[0] == await hashing.embed("alpha topic")
    assert vectors[3] == await hashing.embed("beta topic")


@pytest.mark.asyncio
async def test_batch_failure_returns_none_for_every_slot(hashing):
    with patch.object(hashing, "_encode", new=AsyncMock(side_effect=RuntimeError("model crashed"))):
        vectors = await hashing.embed_batch(["one", "two", "three"])

    assert vectors == [None, None, None]


@pytest.mark.asyncio
async def test_batch_of_nothing(hashing):
    assert await hashing.embed_batch([]) == []
    assert await hashing.embed_batch(["", " "]) == [None, None]


@pytest.mark.asyncio
async def test_provider_failure_returns_none(hashing):
    with patch.object(hashing, "_encode", new=AsyncMock(side_effect=ConnectionError("down"))):
        assert await hashing.embed("some text") is None


def test_unknown_provider_is_a_programmer_error():
    with pytest.raises(ValueError):
        Embeddings(provider="carrier-pigeon")


def test_model_id_includes_provider():
    assert Embeddings(provider="hashing", dim=32).model_id == "hashing/token-hash-32"
    assert Embeddings(provider="ollama", model="nomic-embed-text").model_id == "ollama/nomic-embed-text"


@pytest.mark.asyncio
async def test_ollama_provider_posts_batch_input():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        import json
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"embeddings": [[0.1, 0.2], [0.3, 0.4]]})

    provider = Embeddings(provider="ollama", model="nomic-embed-text", transport=httpx.MockTransport(handler))
    vectors = await provider.embed_batch(["first", "second"])

    assert vectors == [[0.1, 0.2], [0.3, 0.4]]
    assert seen["body"] == {"model": "nomic-embed-text", "input": ["first", "second"]}


@pytest.mark.asyncio
async def test_ollama_error_status_is_soft_failure():
    transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
    provider = Embeddings(provider="ollama", model="nomic-embed-text", transport=transport)

    assert await provider.embed("hello") is None
