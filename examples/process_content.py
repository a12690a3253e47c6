#!/usr/bin/env python3
"""
Example: run two Slack threads through the content pipeline.

This script demonstrates:
1. Normalizing a source payload into a content item
2. Processing it (analysis, then embedding) on the in-process queue
3. Searching the results and rebuilding topics and conflicts

Stores are in-memory; only the OpenAI API is called.

Prerequisites:
    - Set OPENAI_API_KEY (a .env file at the repo root is loaded)

Usage:
    python examples/process_content.py
"""

import asyncio
import os
from pathlib import Path

from dotenv import load_dotenv

env_file = Path(__file__).parent.parent / '.env'
if env_file.exists():
    load_dotenv(env_file)

from content_pipeline.api.config import Settings
from content_pipeline.api.services import build_services
from content_pipeline.clients.openai_client import OpenAIClient
from content_pipeline.logging import configure_logging
from content_pipeline.search import SearchFilters
from content_pipeline.sources import InMemoryPayloadStore, SlackThreadSource, to_content_item

ORGANIZATION_ID = 'org_example'

THREADS = {
    'slack/billing-db': {
        'organization_id': ORGANIZATION_ID,
        'channel': {'id': 'C01', 'name': 'billing'},
        'users': {'U1': 'Maya', 'U2': 'Leo'},
        'messages': [
            {'ts': '1.0', 'user': 'U1', 'text': 'Which database should billing use?'},
            {'ts': '2.0', 'user': 'U2', 'text': 'We decided to use Postgres for billing storage.'},
            {'ts': '3.0', 'user': 'U1', 'text': 'Leo, can you write the schema by Friday?'},
        ],
    },
    'slack/billing-db-followup': {
        'organization_id': ORGANIZATION_ID,
        'channel': {'id': 'C02', 'name': 'platform'},
        'users': {'U2': 'Leo', 'U3': 'Ana'},
        'messages': [
            {'ts': '10.0', 'user': 'U3', 'text': 'Platform review for billing storage.'},
            {'ts': '11.0', 'user': 'U2', 'text': 'We will use MongoDB for billing storage going forward.'},
        ],
    },
}


async def main():
    if not os.getenv('OPENAI_API_KEY'):
        print("ERROR: OPENAI_API_KEY not set")
        return

    configure_logging(json_output=False)
    settings = Settings(WORKER_API_KEY='example', CONFLICT_LLM_CLASSIFIER=False)
    services = build_services(settings, OpenAIClient())

    payloads = InMemoryPayloadStore()
    for ref, payload in THREADS.items():
        payloads.put(ref, payload)
    source = SlackThreadSource(payloads)

    await services.start()
    try:
        item_ids = []
        for ref in THREADS:
            raw = await source.fetch_raw_item(ref)
            item = await services.repository.create(to_content_item(raw))
            await services.orchestrator.trigger(item.id)
            item_ids.append(item.id)

        await services.orchestrator.drain()

        print("=" * 60)
        for item_id in item_ids:
            item = await services.repository.require(item_id)
            print(f"\n{item.title}")
            print(f"  status: {item.processing_status.value}")
            print(f"  summary: {item.summary}")
            print(f"  tags: {', '.join(item.tags)}")
            for action_item in item.action_items:
                print(f"  - [{action_item.status.value}] {action_item.title} ({action_item.assignee or 'unassigned'})")

        print("\n" + "=" * 60)
        response = await services.search.search(
            'billing database choice', SearchFilters(organization_id=ORGANIZATION_ID, threshold=0.3)
        )
        print(f"Search hits: {len(response.hits)}")
        for hit in response.hits:
            print(f"  {hit.similarity:.2f}  {hit.title}: {hit.snippet}")

        rebuilt = await services.knowledge.rebuild_topics(ORGANIZATION_ID)
        print(f"\nTopics: {[topic.name for topic in rebuilt.topics]}")

        report = await services.knowledge.detect_conflicts(ORGANIZATION_ID)
        print(f"Conflicts: {len(report.conflicts)}")
        for conflict in report.conflicts:
            print(f"  {conflict.conflict_type.value}: {conflict.explanation}")
    finally:
        await services.close()


if __name__ == '__main__':
    asyncio.run(main())
