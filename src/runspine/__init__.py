"""
runspine - runbook execution engine.

Takes declarative, user-authored runbooks (an ordered tree of typed
steps) and executes them with retry, timeout, pause-for-approval and
partial-failure semantics while streaming progress to observers.

Packages:
    runspine.core            errors, logging, settings, events, store, secrets
    runspine.execution       retry strategies and timeout races
    runspine.orchestration   step model, executors, engine, approvals, service
    runspine.cli             ``runspine`` command line

Quick start::

    from runspine.core.events.memory import InMemoryEventBus
    from runspine.core.store.memory import InMemoryStore
    from runspine.orchestration import ExecutionEngine, RunbookCatalog, RunbookService

    store, bus = InMemoryStore(), InMemoryEventBus()
    engine = ExecutionEngine(store, bus)
    runbook = RunbookCatalog(store).create_from_yaml("deploy.yaml")
    execution_id = await RunbookService(store, bus, engine).start_execution(
        runbook.id, {"version": "1.4.2"}, wait=True
    )
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
