# topic_quota_guard/demo/seed_demo_data.py

from topic_quota_guard.config.loader import QuotaConfig
from topic_quota_guard.core.recorder import ConversationRecorder
from topic_quota_guard.storage.repository import LocalTopicLedger

ledger = LocalTopicLedger("topic_quota_guard.db", chunk_size=256)
ledger.initialize_schema()

recorder = ConversationRecorder(ledger, ledger, quota_config=QuotaConfig(default_allowance=3))

topic_id = ledger.create_topic(memo="Demo project")
recorder.create_project(topic_id, "Demo project", owner="0.0.1234", chat_count=3)

turns = [
    ("What is a topic?", "An append-only, ordered message feed."),
    (
        "How are large messages stored?",
        # long enough to be split into several chunks
        "Messages larger than the chunk size are split into numbered chunks "
        "that share the initial transaction's valid-start time. Readers "
        "collect the chunks by that key and join them in order once every "
        "chunk has arrived. " * 2,
    ),
]

for question, answer in turns:
    recorder.record_turn(topic_id, question, answer)

print(f"Demo project seeded on topic {topic_id}")
