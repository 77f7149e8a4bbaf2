"""
Unit Tests for studyportal.local_state.

Covers optimistic updates, subscriptions and cross-context propagation.
"""


class TestLocalState:
    """Test a single binding."""

    def test_initial_value_when_absent(self, storage):
        """Test the initial value is used when nothing is stored."""
        from studyportal.local_state import LocalState

        state = LocalState(storage, "tasks", [])
        assert state.value == []
        assert state.get() == []

    def test_initial_value_is_copied(self, storage):
        """Test mutating the binding does not mutate the caller's initial."""
        from studyportal.local_state import LocalState

        initial = {"items": []}
        state = LocalState(storage, "k", initial)
        state.value["items"].append(1)

        assert initial == {"items": []}

    def test_binding_does_not_persist_initial(self, storage):
        """Test creating a binding writes nothing."""
        from studyportal.local_state import LocalState

        LocalState(storage, "tasks", [])
        assert storage.get("tasks") is None

    def test_reads_stored_value(self, storage):
        from studyportal.local_state import LocalState

        storage.set("tasks", [{"id": "t1"}])
        state = LocalState(storage, "tasks", [])

        assert state.value == [{"id": "t1"}]

    def test_set_persists(self, storage):
        """Test set updates memory and storage."""
        from studyportal.local_state import LocalState

        state = LocalState(storage, "selectedCourseId", "")
        assert state.set("c2") is True

        assert state.value == "c2"
        assert storage.get("selectedCourseId") == "c2"

    def test_set_with_updater(self, storage):
        """Test a callable receives the previous value."""
        from studyportal.local_state import LocalState

        state = LocalState(storage, "tasks", [])
        state.set(lambda prev: prev + [{"id": "t1"}])
        state.set(lambda prev: prev + [{"id": "t2"}])

        assert [t["id"] for t in state.value] == ["t1", "t2"]
        assert [t["id"] for t in storage.get("tasks")] == ["t1", "t2"]

    def test_subscribers_notified_once_per_set(self, storage):
        """Test own writes are not echoed back to subscribers."""
        from studyportal.local_state import LocalState

        state = LocalState(storage, "k", 0)
        seen = []
        state.subscribe(seen.append)

        state.set(1)
        state.set(2)

        assert seen == [1, 2]

    def test_unsubscribe(self, storage):
        from studyportal.local_state import LocalState

        state = LocalState(storage, "k", 0)
        seen = []
        unsubscribe = state.subscribe(seen.append)
        unsubscribe()

        state.set(1)

        assert seen == []

    def test_failed_persist_keeps_optimistic_value(self, db_path):
        """Test a quota failure leaves the new value in memory only."""
        from studyportal.local_state import LocalState
        from studyportal.local_storage import LocalStorage

        store = LocalStorage(db_path=db_path, quota_bytes=64)
        try:
            state = LocalState(store, "notes", "")
            seen = []
            state.subscribe(seen.append)

            assert state.set("x" * 500) is False
            assert state.value == "x" * 500
            assert seen == ["x" * 500]
            assert store.get("notes") is None
        finally:
            store.close()

    def test_other_keys_ignored(self, storage):
        """Test changes to other keys do not touch the binding."""
        from studyportal.local_state import LocalState

        state = LocalState(storage, "a", 0)
        storage.set("b", 5)

        assert state.value == 0

    def test_two_bindings_same_context(self, storage):
        """Test a second binding on the same key follows the first."""
        from studyportal.local_state import LocalState

        first = LocalState(storage, "k", 0)
        second = LocalState(storage, "k", 0)

        first.set(7)

        assert second.value == 7

    def test_close_detaches(self, storage, second_context):
        from studyportal.local_state import LocalState

        state = LocalState(second_context, "k", 0)
        state.close()

        storage.set("k", 3)
        second_context.sync()

        assert state.value == 0


class TestCrossContextPropagation:
    """Test bindings in different contexts on the same database."""

    def test_propagates_through_sync(self, storage, second_context):
        """Test A's write becomes B's value without B writing."""
        from studyportal.local_state import LocalState

        a = LocalState(storage, "k", None)
        b = LocalState(second_context, "k", None)
        seen = []
        b.subscribe(seen.append)

        a.set({"v": 1})
        second_context.sync()

        assert b.value == {"v": 1}
        assert seen == [{"v": 1}]

    def test_propagates_through_channel(self, db_path, channel):
        """Test immediate propagation with a shared channel."""
        from studyportal.local_state import LocalState
        from studyportal.local_storage import LocalStorage

        store_a = LocalStorage(db_path=db_path, context_id="a", channel=channel)
        store_b = LocalStorage(db_path=db_path, context_id="b", channel=channel)
        try:
            a = LocalState(store_a, "k", None)
            b = LocalState(store_b, "k", None)

            a.set({"v": 1})

            assert b.value == {"v": 1}
        finally:
            store_a.close()
            store_b.close()

    def test_removal_keeps_last_value(self, storage, second_context):
        """Test a removed key leaves the observed copy untouched."""
        from studyportal.local_state import LocalState

        storage.set("k", 1)
        b = LocalState(second_context, "k", 0)
        storage.delete("k")
        second_context.sync()

        assert b.value == 1

    def test_last_writer_wins(self, storage, second_context):
        """Test concurrent contexts converge on the last physical write."""
        from studyportal.local_state import LocalState

        a = LocalState(storage, "k", 0)
        b = LocalState(second_context, "k", 0)

        a.set(1)
        b.set(2)
        storage.sync()
        second_context.sync()

        assert a.value == 2
        assert b.value == 2
        assert storage.get("k") == 2

    def test_unparseable_change_ignored(self, second_context):
        """Test a malformed event payload is logged and dropped."""
        from studyportal.local_state import LocalState
        from studyportal.local_storage import StorageEvent

        state = LocalState(second_context, "k", "keep")
        second_context._receive(StorageEvent("k", "{oops", None, "state", 99, "elsewhere"))

        assert state.value == "keep"
