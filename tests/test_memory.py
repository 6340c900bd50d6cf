from __future__ import annotations

import json

import allure
import httpx
import pytest

from hive_coord.coordination.collaborators.base import CollaboratorError
from hive_coord.coordination.collaborators.memory import (
    HttpSemanticMemory,
    InMemorySemanticMemory,
)

pytestmark = [
    allure.epic("Collaborators"),
    allure.feature("Semantic Memory"),
]


def _client(handler) -> HttpSemanticMemory:
    return HttpSemanticMemory(
        base_url="http://memory.test/api/",
        transport=httpx.MockTransport(handler),
    )


def test_store_posts_document_and_returns_id() -> None:
    requests: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(201, json={"id": "doc-42"})

    with _client(handler) as memory:
        document_id = memory.store("Task created", {"taskId": "task-1"})

    assert document_id == "doc-42"
    assert requests[0].url.path == "/api/documents"
    assert json.loads(requests[0].content) == {
        "content": "Task created",
        "metadata": {"taskId": "task-1"},
    }


def test_query_sorts_filters_and_truncates() -> None:
    captured: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured.update(json.loads(request.content))
        return httpx.Response(
            200,
            json={
                "results": [
                    {"content": "weak", "score": 0.4},
                    {"content": "good", "score": 0.8, "metadata": {"taskId": "t2"}},
                    {"content": "best", "score": 0.95},
                    {"content": "ok", "score": 0.75},
                    {"score": 0.99},
                ],
            },
        )

    with _client(handler) as memory:
        matches = memory.query("login bug", 2, 0.7)

    assert captured == {"query": "login bug", "max_results": 2, "threshold": 0.7}
    assert [match.content for match in matches] == ["best", "good"]
    assert matches[1].metadata == {"taskId": "t2"}


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, json={"error": "boom"}),
        httpx.Response(200, content=b"not json"),
        httpx.Response(200, json=["not", "an", "object"]),
        httpx.Response(200, json={"id": ""}),
    ],
)
def test_store_failures_raise_collaborator_error(response: httpx.Response) -> None:
    with _client(lambda _request: response) as memory, pytest.raises(CollaboratorError):
        memory.store("content", {})


def test_timeout_raises_collaborator_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with _client(handler) as memory, pytest.raises(CollaboratorError, match="timed out"):
        memory.query("anything", 5, 0.5)


def test_in_memory_scores_by_query_token_overlap() -> None:
    memory = InMemorySemanticMemory()
    memory.store("Fix login timeout in auth service", {"taskId": "t1"})
    memory.store("Login page redesign", {"taskId": "t2"})
    memory.store("Unrelated documentation update", {"taskId": "t3"})

    matches = memory.query("login timeout", max_results=5, threshold=0.5)

    assert [match.metadata["taskId"] for match in matches] == ["t1", "t2"]
    assert [match.score for match in matches] == [1.0, 0.5]
    assert memory.query("login timeout", max_results=1, threshold=0.0)[0].score == 1.0
    assert memory.query("!!!", max_results=5, threshold=0.0) == []
    assert len(memory) == 3
