"""
Tests for call classification, forwarding and dispatch state.
"""

from unittest.mock import patch

import pytest
from structlog.testing import capture_logs

from shared.errors import (
    BroadcastPartialFailure,
    ConfigurationError,
    DispatchStateError,
    NodeUnavailableError,
    UnsupportedOperationError,
)
from shared.models import CallMode, FetchMode, OperationCategory


def pin(router, node_id):
    """Force weighted selection to a given node."""
    return patch.object(router.router, "pick_weighted_node", return_value=node_id)


def conn(fake_driver, node_id):
    return fake_driver.connections[node_id]


class TestClassification:
    """Tests for the operation catalog."""

    @pytest.mark.parametrize("operation,category", [
        ("get_one", OperationCategory.WEIGHTED_READ),
        ("get_col", OperationCategory.WEIGHTED_READ),
        ("get_all", OperationCategory.WEIGHTED_READ),
        ("get_row", OperationCategory.WEIGHTED_READ),
        ("limit_query", OperationCategory.WEIGHTED_READ),
        ("quote_smart", OperationCategory.WEIGHTED_READ),
        ("get_tables", OperationCategory.WEIGHTED_READ),
        ("get_assoc", OperationCategory.WEIGHTED_READ),
        ("prepare", OperationCategory.MASTER_ONLY),
        ("provides", OperationCategory.MASTER_ONLY),
        ("table_info", OperationCategory.MASTER_ONLY),
        ("get_option", OperationCategory.MASTER_ONLY),
        ("get_list_of", OperationCategory.MASTER_ONLY),
        ("commit", OperationCategory.MASTER_ONLY),
        ("rollback", OperationCategory.MASTER_ONLY),
        ("disconnect", OperationCategory.BROADCAST),
        ("set_option", OperationCategory.BROADCAST),
        ("set_fetch_mode", OperationCategory.BROADCAST),
        ("affected_rows", OperationCategory.LAST_NODE),
    ])
    def test_catalog(self, router, operation, category):
        """Test every catalog operation has its routing category."""
        assert router.category_of(operation) == category

    def test_manipulating_statement_in_read_operation(self, router):
        """Test a read helper carrying a write statement is classified as write."""
        assert router.category_of("get_one", "DELETE FROM posts") == OperationCategory.WRITE

    def test_write_bit_classifies_as_write(self, router):
        """Test the WRITE bit turns a read into a write."""
        assert router.category_of("get_all", "SELECT 1", mode=CallMode.WRITE) == OperationCategory.WRITE

    def test_unsupported_operation(self, router, fake_driver):
        """Test unknown operations are rejected with a warning."""
        with capture_logs() as logs:
            with pytest.raises(UnsupportedOperationError) as exc_info:
                router.call("execute_multiple", "SELECT 1")

        assert exc_info.value.operation == "execute_multiple"
        assert any(
            log["event"] == "unsupported_operation" and log["log_level"] == "warning"
            for log in logs
        )
        assert all(c.calls == [] for c in fake_driver.connections.values())


class TestQuery:
    """Tests for the primary statement entry point."""

    def test_default_mode_goes_to_master(self, router, fake_driver):
        """Test query() defaults to the master."""
        with pin(router, "replica-1"):
            router.query("SELECT * FROM posts")

        assert conn(fake_driver, "master").count("query") == 1
        assert conn(fake_driver, "replica-1").count("query") == 0
        assert router.last_node == "master"

    def test_manipulation_goes_to_master(self, router, fake_driver):
        """Test writes reach the master even in READ mode."""
        with pin(router, "replica-1"):
            router.query("INSERT INTO posts VALUES (?)", (1,), mode=CallMode.READ)

        assert conn(fake_driver, "master").calls == [("query", ("INSERT INTO posts VALUES (?)", (1,)))]
        assert conn(fake_driver, "replica-1").calls == []

    def test_read_mode_uses_weighted_node(self, router, fake_driver):
        """Test READ mode selects a replica for plain reads."""
        with pin(router, "replica-1"):
            result = router.query("SELECT * FROM posts", mode=CallMode.READ)

        assert result.rows == [("row",)]
        assert conn(fake_driver, "replica-1").count("query") == 1
        assert conn(fake_driver, "master").count("query") == 0
        assert router.last_node == "replica-1"

    def test_cache_bit_ignored_with_warning(self, router, fake_driver):
        """Test query() never caches and warns about the CACHE bit."""
        with capture_logs() as logs, pin(router, "replica-1"):
            router.query("SELECT 1", mode=CallMode.READ | CallMode.CACHE)
            router.query("SELECT 1", mode=CallMode.READ | CallMode.CACHE)

        assert conn(fake_driver, "replica-1").count("query") == 2
        assert [log["event"] for log in logs].count("query_cache_mode_ignored") == 2

    def test_empty_replica_result_requeried_on_master(self, router, fake_driver, fake_result):
        """Test an empty replica read is re-issued on the master once."""
        conn(fake_driver, "replica-1").responses["query"] = fake_result([])
        conn(fake_driver, "master").responses["query"] = fake_result([("fresh",)])

        with pin(router, "replica-1"):
            result = router.query("SELECT * FROM posts WHERE id = ?", (7,), mode=CallMode.READ)

        assert result.rows == [("fresh",)]
        assert conn(fake_driver, "replica-1").count("query") == 1
        assert conn(fake_driver, "master").calls == [("query", ("SELECT * FROM posts WHERE id = ?", (7,)))]
        assert router.last_node == "master"

    def test_master_empty_result_is_final(self, router, fake_driver, fake_result):
        """Test the fallback happens exactly once."""
        conn(fake_driver, "replica-1").responses["query"] = fake_result([])
        conn(fake_driver, "master").responses["query"] = fake_result([])

        with pin(router, "replica-1"):
            result = router.query("SELECT 1", mode=CallMode.READ)

        assert result.num_rows() == 0
        assert conn(fake_driver, "master").count("query") == 1

    def test_query_master(self, router, fake_driver):
        """Test query_master() bypasses selection."""
        with pin(router, "replica-1"):
            router.query_master("SELECT 1")
        assert conn(fake_driver, "master").count("query") == 1
        assert router.last_node == "master"


class TestMasterOnlyMode:
    """Tests for the auto-commit driven master-only state."""

    def test_auto_commit_off_pins_everything_to_master(self, router, fake_driver):
        """Test turning auto-commit off sends reads to the master."""
        router.auto_commit(False)
        assert router.master_only

        with pin(router, "replica-1"):
            router.query("SELECT 1", mode=CallMode.READ)
            router.get_all("SELECT 1", mode=CallMode.READ)

        assert conn(fake_driver, "master").calls[0] == ("auto_commit", (False,))
        assert conn(fake_driver, "master").count("query") == 1
        assert conn(fake_driver, "master").count("get_all") == 1
        assert conn(fake_driver, "replica-1").calls == []

    def test_auto_commit_on_restores_balancing(self, router, fake_driver):
        """Test turning auto-commit back on leaves master-only mode."""
        router.auto_commit(False)
        router.auto_commit(True)
        assert not router.master_only

        with pin(router, "replica-2"):
            router.query("SELECT 1", mode=CallMode.READ)
        assert conn(fake_driver, "replica-2").count("query") == 1

    def test_rejected_toggle_keeps_state(self, router, fake_driver):
        """Test a failing auto-commit leaves the state unchanged."""
        conn(fake_driver, "master").errors["auto_commit"] = RuntimeError("not supported")

        with pytest.raises(RuntimeError):
            router.auto_commit(False)
        assert not router.master_only


class TestWeightedReads:
    """Tests for generic weighted-read dispatch."""

    def test_default_mode_is_master(self, router, fake_driver):
        """Test reads without a mode are served by the master."""
        conn(fake_driver, "master").responses["get_all"] = [(1,)]
        with pin(router, "replica-1"):
            assert router.get_all("SELECT 1") == [(1,)]
        assert conn(fake_driver, "replica-1").calls == []

    def test_read_mode_forwards_to_replica(self, router, fake_driver):
        """Test READ mode spreads reads and records the node."""
        conn(fake_driver, "replica-2").responses["get_row"] = ("a", 1)
        with pin(router, "replica-2"):
            assert router.get_row("SELECT * FROM t", mode=CallMode.READ) == ("a", 1)

        assert conn(fake_driver, "replica-2").calls == [("get_row", ("SELECT * FROM t", (), None))]
        assert router.last_node == "replica-2"

    def test_positional_mode_is_stripped(self, router, fake_driver):
        """Test a trailing positional mode is consumed, not forwarded."""
        conn(fake_driver, "replica-1").responses["get_all"] = [(1,)]
        with pin(router, "replica-1"):
            router.call("get_all", "SELECT 1", (), None, CallMode.READ)

        assert conn(fake_driver, "replica-1").calls == [("get_all", ("SELECT 1", (), None))]

    @pytest.mark.parametrize("operation,empty", [
        ("get_all", []),
        ("get_col", []),
        ("get_assoc", {}),
        ("get_one", None),
        ("get_row", None),
    ])
    def test_empty_replica_result_falls_back(self, router, fake_driver, operation, empty):
        """Test every empty read shape triggers one master re-issue."""
        conn(fake_driver, "replica-1").responses[operation] = empty
        conn(fake_driver, "master").responses[operation] = "from-master"

        with pin(router, "replica-1"):
            result = router.call(operation, "SELECT 1", mode=CallMode.READ)

        assert result == "from-master"
        assert conn(fake_driver, "replica-1").count(operation) == 1
        assert conn(fake_driver, "master").calls == conn(fake_driver, "replica-1").calls

    def test_non_empty_result_not_requeried(self, router, fake_driver):
        """Test a replica result with rows is returned as is."""
        conn(fake_driver, "replica-1").responses["get_col"] = [1, 2]
        with pin(router, "replica-1"):
            assert router.get_col("SELECT id FROM t", mode=CallMode.READ) == [1, 2]
        assert conn(fake_driver, "master").calls == []

    def test_master_selected_read_not_reissued(self, router, fake_driver):
        """Test an empty result from the master is not re-issued."""
        conn(fake_driver, "master").responses["get_all"] = []
        with pin(router, "master"):
            assert router.get_all("SELECT 1", mode=CallMode.READ) == []
        assert conn(fake_driver, "master").count("get_all") == 1

    def test_master_only_operation_records_node(self, router, fake_driver):
        """Test master-only calls go to the master and update the last node."""
        conn(fake_driver, "master").responses["table_info"] = [{"name": "id"}]
        assert router.table_info("posts") == [{"name": "id"}]
        assert router.last_node == "master"


class TestBroadcast:
    """Tests for calls sent to every node."""

    def test_broadcast_reaches_all_nodes_in_order(self, router, fake_driver):
        """Test broadcast calls each node once, in registration order."""
        order = []
        for node_id, connection in fake_driver.connections.items():
            connection.responses["set_fetch_mode"] = lambda mode, node_id=node_id: order.append(node_id)

        assert router.set_fetch_mode(FetchMode.ASSOC) is True
        assert order == ["master", "replica-1", "replica-2"]

    def test_error_on_second_node_stops_broadcast(self, router, fake_driver):
        """Test the third node is never called after the second fails."""
        error = RuntimeError("bad option")
        conn(fake_driver, "replica-1").errors["set_option"] = error

        with pytest.raises(BroadcastPartialFailure) as exc_info:
            router.set_option("debug", 1)

        assert exc_info.value.node_id == "replica-1"
        assert exc_info.value.completed == ["master"]
        assert exc_info.value.__cause__ is error
        assert conn(fake_driver, "master").count("set_option") == 1
        assert conn(fake_driver, "replica-2").count("set_option") == 0

    def test_broadcast_skips_failed_node_with_warning(self, router, fake_driver):
        """Test nodes in a persistent error state are skipped and reported."""
        router.registry.mark_failed("replica-2", ConnectionResetError("gone"))

        with capture_logs() as logs:
            assert router.set_option("debug", 1) is True

        assert conn(fake_driver, "replica-2").count("set_option") == 0
        assert any(
            log["event"] == "node_unavailable" and log["node_id"] == "replica-2"
            for log in logs
        )

    def test_broadcast_leaves_last_node(self, router):
        """Test broadcasts do not change the recorded node."""
        router.query_master("SELECT 1")
        router.set_option("debug", 1)
        assert router.last_node == "master"


class TestLastNode:
    """Tests for calls scoped to the previously used node."""

    def test_affected_rows_without_prior_call(self, router):
        """Test affected_rows needs a previous call."""
        with pytest.raises(DispatchStateError):
            router.affected_rows()

    def test_affected_rows_after_write(self, router, fake_driver):
        """Test affected_rows is answered by the node that ran the write."""
        conn(fake_driver, "master").responses["affected_rows"] = 3
        router.query("UPDATE posts SET title = 'x'")

        assert router.affected_rows() == 3
        assert conn(fake_driver, "replica-1").count("affected_rows") == 0

    def test_affected_rows_after_replica_read(self, router, fake_driver):
        """Test affected_rows follows the node of a replica read."""
        conn(fake_driver, "replica-1").responses["affected_rows"] = 0
        with pin(router, "replica-1"):
            router.query("SELECT 1", mode=CallMode.READ)

        router.affected_rows()
        assert conn(fake_driver, "replica-1").count("affected_rows") == 1
        assert router.last_node == "replica-1"

    def test_failed_query_keeps_previous_node(self, router, fake_driver):
        """Test a statement that raises does not become the last node."""
        router.query_master("UPDATE posts SET title = 'x'")
        conn(fake_driver, "replica-1").errors["query"] = RuntimeError("no such table: posts")

        with pin(router, "replica-1"), pytest.raises(RuntimeError):
            router.query("SELECT * FROM posts", mode=CallMode.READ)

        assert router.last_node == "master"

    def test_failed_read_helper_keeps_previous_node(self, router, fake_driver):
        """Test a read helper that raises does not become the last node."""
        router.query_master("UPDATE posts SET title = 'x'")
        conn(fake_driver, "replica-2").errors["get_all"] = RuntimeError("no such table: posts")

        with pin(router, "replica-2"), pytest.raises(RuntimeError):
            router.get_all("SELECT * FROM posts", mode=CallMode.READ)

        assert router.last_node == "master"


class TestFailedNodes:
    """Tests for nodes in a persistent error state."""

    def test_connection_error_marks_node_failed(self, router, fake_driver):
        """Test a lost connection is remembered and reported on every use."""
        conn(fake_driver, "replica-1").errors["get_all"] = ConnectionResetError("reset")

        with pin(router, "replica-1"):
            with pytest.raises(ConnectionResetError):
                router.get_all("SELECT 1", mode=CallMode.READ)
            assert router.registry.is_failed("replica-1")

            for _ in range(2):
                with capture_logs() as logs:
                    with pytest.raises(NodeUnavailableError) as exc_info:
                        router.get_all("SELECT 1", mode=CallMode.READ)
                assert isinstance(exc_info.value.__cause__, ConnectionResetError)
                assert any(log["event"] == "node_unavailable" for log in logs)

        assert conn(fake_driver, "replica-1").count("get_all") == 1

    def test_other_errors_propagate_without_marking(self, router, fake_driver):
        """Test ordinary driver errors are raised but do not fail the node."""
        conn(fake_driver, "master").errors["prepare"] = ValueError("syntax")
        with pytest.raises(ValueError):
            router.prepare("SELEC")
        assert not router.registry.is_failed("master")


class TestAttributes:
    """Tests for attribute accessors."""

    def test_read_from_master(self, router, fake_driver):
        """Test attributes are read from the master handle."""
        conn(fake_driver, "master").fetch_mode = FetchMode.ASSOC
        assert router.get_attribute("fetch_mode") == FetchMode.ASSOC

    def test_last_query_from_last_node(self, router, fake_driver):
        """Test last_query comes from the node that served the last call."""
        assert router.last_query is None
        with pin(router, "replica-2"):
            router.query("SELECT 42", mode=CallMode.READ)
        assert router.last_query == "SELECT 42"
        assert conn(fake_driver, "master").last_query is None

    def test_set_broadcasts_to_all_nodes(self, router, fake_driver):
        """Test assignments reach every node handle."""
        router.set_attribute("options", {"debug": 2})

        for connection in fake_driver.connections.values():
            assert connection.options == {"debug": 2}
        master_options = conn(fake_driver, "master").options
        assert master_options is not conn(fake_driver, "replica-1").options

    @pytest.mark.parametrize("name", ["password", "_conn", "__class__"])
    def test_unknown_attributes_rejected(self, router, name):
        """Test only the declared attributes are reachable."""
        with pytest.raises(UnsupportedOperationError):
            router.get_attribute(name)
        with pytest.raises(UnsupportedOperationError):
            router.set_attribute(name, None)


class TestSetupPhase:
    """Tests for the setup / traffic boundary."""

    def test_attach_after_traffic_rejected(self, router):
        """Test the registry is frozen once calls are dispatched."""
        router.query_master("SELECT 1")
        with pytest.raises(ConfigurationError):
            router.attach_node("fake://replica-3/app", 10)
