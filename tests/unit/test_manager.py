from __future__ import annotations

import asyncio
import sqlite3
import threading
import time

import pytest

from txbind import (
    CommitError,
    ContextStackError,
    ContextVarRegistry,
    IllegalTransactionStateError,
    Propagation,
    PropagationViolation,
    ResourceBinder,
    RollbackError,
    TransactionManager,
    TransactionOutcome,
    TransactionState,
    TransactionTimeoutError,
    UnexpectedRollbackError,
)

from tests.mocks.connections import FakeFactory


@pytest.mark.unit
def test_successful_guarded_operation_commits_both_writes(accounts) -> None:
    accounts.create_user_guarded("alice", "alice@example.com")

    assert accounts.user_names() == ["alice"]
    assert accounts.count_orders() == 1


@pytest.mark.unit
def test_failing_guarded_operation_leaves_no_writes(accounts, factory) -> None:
    with pytest.raises(RuntimeError, match="Intentional error"):
        accounts.create_user_guarded("ERROR", "error@example.com")

    assert accounts.count_users() == 0
    assert accounts.count_orders() == 0
    assert all(handle.closed for handle in factory.opened)


@pytest.mark.unit
def test_constraint_violation_rolls_back_first_insert(manager, accounts) -> None:
    guarded = manager.transactional()(accounts.create_user_with_invalid_order)

    with pytest.raises(sqlite3.IntegrityError):
        guarded("bad", "bad@example.com")

    assert accounts.count_users() == 0


@pytest.mark.unit
def test_new_context_binds_handle_eagerly(manager, factory) -> None:
    with manager.transaction() as ctx:
        assert ctx.handle is not None
        assert ctx.handle.autocommit_suspended
        assert manager.current() is ctx
        assert manager.in_transaction()
        assert len(factory.opened) == 1

    assert ctx.outcome is TransactionOutcome.COMMITTED
    assert manager.current() is None


@pytest.mark.unit
def test_mandatory_without_context_opens_nothing(manager, factory) -> None:
    with pytest.raises(PropagationViolation):
        with manager.transaction(Propagation.MANDATORY):
            pytest.fail("body must not run")

    assert factory.opened == []


@pytest.mark.unit
def test_mandatory_joins_existing_context(manager) -> None:
    with manager.transaction() as outer:
        with manager.transaction("mandatory") as joined:
            assert joined is outer


@pytest.mark.unit
def test_never_inside_context_is_rejected_without_touching_it(manager) -> None:
    with manager.transaction() as ctx:
        with pytest.raises(PropagationViolation):
            with manager.transaction(Propagation.NEVER):
                pytest.fail("body must not run")
        assert ctx.state is TransactionState.ACTIVE

    assert ctx.outcome is TransactionOutcome.COMMITTED


@pytest.mark.unit
def test_supports_without_context_runs_on_autocommit(manager, accounts, factory) -> None:
    with manager.transaction(Propagation.SUPPORTS) as ctx:
        assert ctx is None
        accounts.create_user_with_order("plain", "plain@example.com")

    assert accounts.count_users() == 1
    assert factory.calls_for(factory.opened[0]) == []


@pytest.mark.unit
def test_failed_joined_call_forces_outer_rollback(manager, accounts) -> None:
    with pytest.raises(UnexpectedRollbackError) as excinfo:
        with manager.transaction() as outer:
            accounts.create_user_with_order("bob", "bob@example.com")
            with pytest.raises(ValueError):
                with manager.transaction():
                    raise ValueError("inner failure")
            assert outer.is_rollback_only
            accounts.create_user_with_order("carol", "carol@example.com")

    assert isinstance(excinfo.value.__cause__, ValueError)
    assert outer.outcome is TransactionOutcome.ROLLED_BACK
    assert accounts.count_users() == 0


@pytest.mark.unit
def test_set_rollback_only_without_failure(manager, accounts) -> None:
    with pytest.raises(UnexpectedRollbackError):
        with manager.transaction():
            accounts.create_user_with_order("dave", "dave@example.com")
            manager.set_rollback_only()

    assert accounts.count_users() == 0

    with pytest.raises(IllegalTransactionStateError):
        manager.set_rollback_only()


@pytest.mark.unit
def test_requires_new_commits_independently_of_outer(manager, accounts) -> None:
    with pytest.raises(RuntimeError):
        with manager.transaction() as outer:
            with manager.transaction(Propagation.REQUIRES_NEW) as inner:
                assert inner is not outer
                assert inner.handle is not outer.handle
                assert outer.suspended
                assert manager.current() is inner
                accounts.create_user_with_order("inner", "inner@example.com")

            assert not outer.suspended
            assert manager.current() is outer
            assert inner.outcome is TransactionOutcome.COMMITTED
            accounts.create_user_with_order("outer", "outer@example.com")
            raise RuntimeError("outer fails after inner committed")

    assert outer.outcome is TransactionOutcome.ROLLED_BACK
    assert accounts.user_names() == ["inner"]


@pytest.mark.unit
def test_requires_new_failure_does_not_mark_outer(manager, accounts) -> None:
    with manager.transaction() as outer:
        with pytest.raises(RuntimeError):
            with manager.transaction(Propagation.REQUIRES_NEW):
                accounts.create_user_with_order("ERROR", "error@example.com")
        assert outer.state is TransactionState.ACTIVE
        accounts.create_user_with_order("kept", "kept@example.com")

    assert accounts.user_names() == ["kept"]


@pytest.mark.unit
def test_not_supported_parks_context_and_autocommits(manager, accounts) -> None:
    with pytest.raises(RuntimeError):
        with manager.transaction() as outer:
            with manager.transaction(Propagation.NOT_SUPPORTED) as ctx:
                assert ctx is None
                assert manager.current() is None
                accounts.create_user_with_order("loose", "loose@example.com")
            assert manager.current() is outer
            raise RuntimeError("outer fails")

    assert accounts.user_names() == ["loose"]


@pytest.mark.unit
def test_nested_failure_rolls_back_to_savepoint_only(manager, accounts) -> None:
    with manager.transaction() as outer:
        accounts.create_user_with_order("keep", "keep@example.com")
        with pytest.raises(ValueError):
            with manager.transaction(Propagation.NESTED) as nested:
                assert nested.parent is outer
                assert nested.handle is outer.handle
                assert nested.is_nested
                accounts.create_user_with_order("drop", "drop@example.com")
                raise ValueError("nested failure")
        assert nested.outcome is TransactionOutcome.ROLLED_BACK
        assert outer.state is TransactionState.ACTIVE

    assert accounts.user_names() == ["keep"]


@pytest.mark.unit
def test_nested_success_is_committed_with_outer(manager, accounts) -> None:
    with manager.transaction():
        with manager.transaction(Propagation.NESTED):
            accounts.create_user_with_order("first", "first@example.com")
        accounts.create_user_with_order("second", "second@example.com")

    assert accounts.user_names() == ["first", "second"]


@pytest.mark.unit
def test_nested_without_context_creates_one(manager) -> None:
    with manager.transaction(Propagation.NESTED) as ctx:
        assert ctx is not None and not ctx.is_nested


@pytest.mark.unit
def test_commit_failure_rolls_back_and_reports() -> None:
    factory = FakeFactory(fail_commit=True)
    manager = TransactionManager(factory)

    with pytest.raises(CommitError) as excinfo:
        with manager.transaction() as ctx:
            pass

    assert excinfo.value.rolled_back
    assert not excinfo.value.state_undefined
    assert ctx.outcome is TransactionOutcome.ROLLED_BACK
    assert factory.connections[0].events == ["commit", "rollback", "close"]


@pytest.mark.unit
def test_commit_and_rollback_failure_leaves_state_undefined() -> None:
    factory = FakeFactory(fail_commit=True, fail_rollback=True)
    manager = TransactionManager(factory)

    with pytest.raises(CommitError) as excinfo:
        with manager.transaction() as ctx:
            pass

    assert excinfo.value.state_undefined
    assert ctx.outcome is TransactionOutcome.UNKNOWN
    assert factory.connections[0].events == ["commit", "rollback", "close"]
    assert manager.current() is None


@pytest.mark.unit
def test_rollback_failure_surfaces_original_error() -> None:
    factory = FakeFactory(fail_rollback=True)
    manager = TransactionManager(factory)
    original = ValueError("business failure")

    with pytest.raises(RollbackError) as excinfo:
        with manager.transaction() as ctx:
            raise original

    assert excinfo.value.original_error is original
    assert excinfo.value.atomic is False
    assert ctx.outcome is TransactionOutcome.UNKNOWN
    assert factory.connections[0].events == ["rollback", "close"]


@pytest.mark.unit
def test_out_of_order_exit_rolls_back_and_releases_everything() -> None:
    factory = FakeFactory()
    manager = TransactionManager(factory)
    outer = manager.enter()
    inner = manager.enter(Propagation.REQUIRES_NEW)

    with pytest.raises(ContextStackError):
        manager.exit(outer)

    assert outer.exited
    assert outer.context.outcome is TransactionOutcome.ROLLED_BACK
    assert inner.context.outcome is TransactionOutcome.ROLLED_BACK
    assert [conn.events for conn in factory.connections] == [
        ["rollback", "close"],
        ["rollback", "close"],
    ]
    assert manager.registry.depth() == 0

    with pytest.raises(IllegalTransactionStateError):
        manager.exit(inner)
    with pytest.raises(IllegalTransactionStateError):
        manager.exit(outer)


@pytest.mark.unit
def test_body_error_is_chained_when_inner_transaction_left_open() -> None:
    factory = FakeFactory()
    manager = TransactionManager(factory)

    with pytest.raises(ContextStackError) as excinfo:
        with manager.transaction():
            manager.enter(Propagation.REQUIRES_NEW)
            raise RuntimeError("body failure")

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert all(conn.events == ["rollback", "close"] for conn in factory.connections)
    assert manager.current() is None


@pytest.mark.unit
def test_out_of_order_exit_unwinds_open_savepoint(manager, accounts) -> None:
    outer = manager.enter()
    accounts.create_user_with_order("kept", "kept@example.com")
    nested = manager.enter(Propagation.NESTED)

    with pytest.raises(ContextStackError):
        manager.exit(outer)

    assert nested.context.outcome is TransactionOutcome.ROLLED_BACK
    assert outer.context.outcome is TransactionOutcome.ROLLED_BACK
    assert accounts.count_users() == 0


@pytest.mark.unit
def test_deadline_reached_before_commit_rolls_back(manager, accounts) -> None:
    with pytest.raises(TransactionTimeoutError):
        with manager.transaction(timeout=0.2) as ctx:
            accounts.create_user_with_order("slow", "slow@example.com")
            time.sleep(0.3)

    assert ctx.outcome is TransactionOutcome.ROLLED_BACK
    assert accounts.count_users() == 0


@pytest.mark.unit
def test_bare_decorator_and_name_override(manager, accounts) -> None:
    @manager.transactional
    def plain() -> str:
        return manager.current().propagation.value

    @manager.transactional("requires_new", name="audit")
    def named() -> str | None:
        return manager.current().name

    assert plain() == "required"
    assert named() == "audit"
    assert plain.__name__ == "plain"


@pytest.mark.unit
def test_concurrent_threads_get_separate_contexts() -> None:
    manager = TransactionManager(FakeFactory())
    barrier = threading.Barrier(2)
    handles: list[object] = []

    def worker() -> None:
        with manager.transaction() as ctx:
            barrier.wait(timeout=5)
            handles.append(ctx.handle)
            barrier.wait(timeout=5)

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(handles) == 2
    assert handles[0] is not handles[1]


@pytest.mark.unit
def test_binder_and_registry_must_match(factory) -> None:
    with pytest.raises(ValueError):
        TransactionManager(
            factory,
            registry=ContextVarRegistry("a"),
            binder=ResourceBinder(ContextVarRegistry("b")),
        )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_async_decorator_commits(manager, accounts) -> None:
    @manager.transactional()
    async def register(name: str):
        accounts.create_user_with_order(name, f"{name}@example.com")
        await asyncio.sleep(0)
        return manager.current()

    ctx = await register("async")

    assert ctx.outcome is TransactionOutcome.COMMITTED
    assert accounts.user_names() == ["async"]
    assert manager.current() is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_async_decorator_rolls_back_on_error(manager, accounts) -> None:
    @manager.transactional()
    async def register(name: str) -> None:
        await asyncio.sleep(0)
        accounts.create_user_with_order(name, f"{name}@example.com")

    with pytest.raises(RuntimeError):
        await register("ERROR")

    assert accounts.count_users() == 0


@pytest.mark.unit
def test_generator_keeps_transaction_open_while_iterating(manager, accounts) -> None:
    seen = []

    @manager.transactional()
    def register_all(names):
        for name in names:
            seen.append(manager.current())
            yield accounts.create_user_with_order(name, f"{name}@example.com")

    with pytest.raises(RuntimeError):
        list(register_all(["ok", "ERROR"]))

    assert seen[0] is not None and seen[0] is seen[1]
    assert seen[0].outcome is TransactionOutcome.ROLLED_BACK
    assert accounts.count_users() == 0

    assert len(list(register_all(["first", "second"]))) == 2
    assert accounts.user_names() == ["first", "second"]


@pytest.mark.unit
def test_abandoned_generator_rolls_back(manager, accounts) -> None:
    @manager.transactional()
    def register_all(names):
        for name in names:
            yield accounts.create_user_with_order(name, f"{name}@example.com")

    rows = register_all(["partial", "never"])
    next(rows)
    rows.close()

    assert manager.current() is None
    assert accounts.count_users() == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_async_generator_keeps_transaction_open(manager, accounts) -> None:
    @manager.transactional()
    async def register_all(names):
        for name in names:
            await asyncio.sleep(0)
            yield manager.current()
            accounts.create_user_with_order(name, f"{name}@example.com")

    contexts = [ctx async for ctx in register_all(["a", "b"])]

    assert contexts[0] is contexts[1]
    assert contexts[0].outcome is TransactionOutcome.COMMITTED
    assert accounts.user_names() == ["a", "b"]

    with pytest.raises(RuntimeError):
        async for _ in register_all(["c", "ERROR"]):
            pass
    assert accounts.user_names() == ["a", "b"]
