import json
import threading

import pytest

from roadsync.common.errors import StorageFailure
from roadsync.store.rest import RestTreeStore, _StreamListener


class FakeClient:
    def __init__(self, payload=None):
        self.payload = payload
        self.calls = []

    def get_json(self, url):
        self.calls.append(("GET", url, None))
        return self.payload

    def patch_json(self, url, payload):
        self.calls.append(("PATCH", url, payload))

    def put_json(self, url, payload):
        self.calls.append(("PUT", url, payload))

    def close(self):
        pass


def _listener(seen):
    store = RestTreeStore("https://db.example.com/", client=FakeClient())
    return _StreamListener(store, "UsersData", seen.append, reconnect_initial=0.01, reconnect_max=0.01)


def _frame(path, data):
    return json.dumps({"path": path, "data": data})


def test_rest_store_builds_urls_and_delegates():
    client = FakeClient({"u1": {}})
    store = RestTreeStore("https://db.example.com/", client=client)

    assert store.get("/UsersData/") == {"u1": {}}
    store.update("UsersData/u1/r1", {"_migration": {"status": "migrated"}})
    store.set("UsersData/u1/r2", {"lat": 1})

    assert client.calls == [
        ("GET", "https://db.example.com/UsersData.json", None),
        ("PATCH", "https://db.example.com/UsersData/u1/r1.json", {"_migration": {"status": "migrated"}}),
        ("PUT", "https://db.example.com/UsersData/u1/r2.json", {"lat": 1}),
    ]
    assert store.url_for("") == "https://db.example.com/.json"


def test_initial_put_emits_child_added_for_each_child():
    seen = []
    listener = _listener(seen)
    listener.handle("put", _frame("/", {"u1": {"r1": {"lat": 1}}, "u2": {"r2": {"lat": 2}}}))

    assert sorted((e.kind, e.key) for e in seen) == [("child_added", "u1"), ("child_added", "u2")]
    assert seen[0].parent_path == "UsersData"


def test_nested_put_and_patch_emit_child_changed():
    seen = []
    listener = _listener(seen)
    listener.handle("put", _frame("/", {"u1": {"r1": {"lat": 1}}}))
    listener.handle("put", _frame("/u1/r2", {"lat": 2}))
    listener.handle("patch", _frame("/u1/r1", {"_migration": {"status": "migrated"}}))
    listener.handle("put", _frame("/u3", {"r9": {"lat": 9}}))

    assert [(e.kind, e.key) for e in seen] == [
        ("child_added", "u1"),
        ("child_changed", "u1"),
        ("child_changed", "u1"),
        ("child_added", "u3"),
    ]
    assert seen[2].value["r1"]["_migration"] == {"status": "migrated"}
    assert seen[1].value["r2"] == {"lat": 2}


def test_keep_alive_is_ignored_and_cancel_raises():
    seen = []
    listener = _listener(seen)
    listener.handle("keep-alive", "null")
    assert seen == []

    with pytest.raises(StorageFailure):
        listener.handle("cancel", "null")


def test_malformed_frames_are_skipped_without_touching_the_mirror():
    seen = []
    listener = _listener(seen)
    listener.handle("put", _frame("/", {"u1": {"r1": {"lat": 1}}}))

    listener.handle("put", "{not json")
    listener.handle("put", "5")
    listener.handle("patch", _frame("/u1", [1, 2]))
    listener.handle("patch", _frame("/u1", {"r2": {"lat": 2}}))

    assert [(e.kind, e.key) for e in seen] == [("child_added", "u1"), ("child_changed", "u1")]
    assert listener.mirror == {"u1": {"r1": {"lat": 1}, "r2": {"lat": 2}}}


class StreamingClient(FakeClient):
    def __init__(self, batches):
        super().__init__()
        self.batches = list(batches)
        self.attempts = 0
        self.drained = threading.Event()

    def stream_events(self, url):
        self.attempts += 1
        if not self.batches:
            self.drained.set()
            return
        yield from self.batches.pop(0)


def test_stream_reader_keeps_running_after_bad_frames_and_callback_failures():
    client = StreamingClient(
        [
            [("put", "{not json"), ("patch", _frame("/", "oops")), ("put", _frame("/", {"u1": {"r1": {"lat": 1}}}))],
            [("put", _frame("/u2", {"r2": {"lat": 2}}))],
        ]
    )
    store = RestTreeStore("https://db.example.com/", client=client)
    keys = []

    def callback(event):
        keys.append(event.key)
        if event.key == "u1":
            raise RuntimeError("listener bug")

    listener = _StreamListener(store, "UsersData", callback, reconnect_initial=0.01, reconnect_max=0.01)
    listener.start()
    try:
        assert client.drained.wait(5)
        assert listener.thread.is_alive()
    finally:
        listener.stop()

    assert client.attempts >= 3
    assert keys == ["u1", "u2"]
