import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import redis

FIXED_NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
QUOTA_KEY = "insight_quota:user-1:2024-01-01"
GOOD_TOKEN = "good-token"


class FakePipeline:
    """Just enough of redis-py's Pipeline for WATCH / MULTI / EXEC."""

    def __init__(self, store):
        self.store = store
        self.reset()

    def reset(self):
        self.commands = []
        self.watched = {}

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.reset()

    def watch(self, *keys):
        self.watched = {k: self.store.versions.get(k, 0) for k in keys}

    def unwatch(self):
        self.watched = {}

    def get(self, key):
        return self.store.get(key)

    def multi(self):
        self.commands = []

    def incr(self, key):
        self.commands.append(("incr", key))

    def expire(self, key, seconds):
        self.commands.append(("expire", key, seconds))

    def execute(self):
        if self.store.before_execute:
            hook, self.store.before_execute = self.store.before_execute, None
            hook(self.store)
        changed = any(self.store.versions.get(k, 0) != v for k, v in self.watched.items())
        commands = self.commands
        self.reset()
        if changed:
            raise redis.exceptions.WatchError("watched key changed")
        results = []
        for command in commands:
            if command[0] == "incr":
                results.append(self.store.incr(command[1]))
            else:
                results.append(self.store.expire(command[1], command[2]))
        return results


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.versions = {}
        self.ttls = {}
        self.before_execute = None

    def _bump(self, key):
        self.versions[key] = self.versions.get(key, 0) + 1

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value, ex=None):
        self.data[key] = str(value)
        self._bump(key)
        if ex:
            self.ttls[key] = ex
        return True

    def incr(self, key):
        self.data[key] = str(int(self.data.get(key) or 0) + 1)
        self._bump(key)
        return int(self.data[key])

    def expire(self, key, seconds):
        self.ttls[key] = seconds
        return True

    def ping(self):
        return True

    def pipeline(self):
        return FakePipeline(self)


def fake_firestore(users):
    """MagicMock Firestore client backed by a dict of user documents."""
    client = MagicMock()

    def document(name):
        snapshot = MagicMock()
        snapshot.exists = name in users
        snapshot.id = name
        snapshot.to_dict.return_value = users.get(name)
        doc_ref = MagicMock()
        doc_ref.get.return_value = snapshot
        doc_ref.set.side_effect = lambda data: users.__setitem__(name, data)
        return doc_ref

    client.collection.return_value.document.side_effect = document
    return client


def envelope(text):
    """A Vertex transport envelope carrying `text` as its only part."""
    return json.dumps({
        "candidates": [{
            "content": {"role": "model", "parts": [{"text": text}]},
            "finish_reason": "STOP",
        }],
    })


def capture(mood, captured_at, **extra):
    return {"mood": mood, "capturedAt": captured_at, **extra}
