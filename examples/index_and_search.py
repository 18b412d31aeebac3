"""
Index a project and a standalone document, then search them.

Uses the local sentence-transformers model by default. Set
CORTEXFLOW_EMBEDDING_PROVIDER=openai (plus OPENAI_API_KEY) to use OpenAI.
"""

import asyncio

from cortexflow.models import AgentNote, AgentRole, Phase, Project, Task
from cortexflow.rag import create_rag_pipeline
from cortexflow.utils import load_settings


async def main():
    settings = load_settings("cortexflow.yaml")
    pipeline = await create_rag_pipeline(settings)

    project = Project(
        name="Payments API",
        description="Public API for card payments and refunds.",
        phase=Phase.EXECUTION,
        tags=["api", "payments"],
        tasks=[
            Task(title="Add refund endpoint", description="POST /refunds with idempotency keys."),
            Task(title="Rotate signing keys", description="Move webhook signing keys to the vault."),
        ],
        notes=[
            AgentNote(
                agent=AgentRole.PLANNER,
                category="decision",
                content="Refunds are processed asynchronously; the endpoint only enqueues them.",
            ),
        ],
    )

    indexed = await pipeline.index_project_context(project)
    print(f"Indexed {len(indexed.documents)} documents ({indexed.total_chunks} chunks)")

    await pipeline.index_document(
        "Runbook: failed refunds",
        "Check the refund queue first.\n\nRetry jobs older than an hour with the admin CLI.",
        project_id=project.id,
        metadata={"team": "payments"},
    )

    # Keyword search never needs the embedding model
    result = await pipeline.search("refund", project_id=project.id, search_type="keyword")
    for hit in result.results:
        print(f"{hit.score:.2f}  {hit.document.title}: {hit.highlights[0]}")

    provider = await pipeline.check_embedding_provider()
    if provider["available"]:
        context = await pipeline.build_context_from_search(
            "how are refunds handled?", project_id=project.id, max_context_length=1500
        )
        print(context.context)
    else:
        print(f"Embedding provider {provider['provider']!r} unavailable, skipping hybrid search")

    print(await pipeline.get_stats())
    pipeline.close()


if __name__ == "__main__":
    asyncio.run(main())
