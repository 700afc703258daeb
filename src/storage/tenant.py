"""Workspace-scoped DB context: explicit tenant binding, RLS setting and query guards.

Every unit of work runs inside :func:`tenant_transaction` with an explicit
:class:`TenantContext`. While a context is bound on a session:

* SELECTs on tenant-scoped entities are filtered to the bound workspace;
* flushes of tenant-scoped rows from another workspace are rejected;
* on PostgreSQL, ``app.current_workspace_id`` is set transaction-locally so the
  row-level-security policies from the migrations apply as well.

Touching a tenant-scoped entity on a session without a bound context raises
:class:`MissingTenantContext`. The guards apply to session factories passed
through :func:`install_tenant_guards`.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from itertools import chain
from typing import Any, Iterator, List, Optional

from sqlalchemy import event, text
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria

from src.core.errors import MissingTenantContext


TENANT_INFO_KEY = "tenant_context"


class TenantScoped:
    """Marker mixin for mapped classes that carry a ``workspace_id`` column."""


@dataclass(frozen=True)
class TenantContext:
    workspace_id: str
    actor_id: Optional[str] = None


def current_tenant(session: Session) -> Optional[TenantContext]:
    return session.info.get(TENANT_INFO_KEY)


def require_tenant(session: Session) -> TenantContext:
    context = current_tenant(session)
    if context is None:
        raise MissingTenantContext("Tenant context is required for workspace data.")
    return context


def set_workspace_context(session: Session, workspace_id: Optional[str]) -> None:
    """Set workspace context for PostgreSQL RLS policies."""

    bind = session.get_bind()
    if bind is None or bind.dialect.name != "postgresql":
        return

    session.execute(
        text("SELECT set_config('app.current_workspace_id', :workspace_id, true)"),
        {"workspace_id": workspace_id or ""},
    )


def bind_tenant(session: Session, context: TenantContext) -> None:
    session.info[TENANT_INFO_KEY] = context
    set_workspace_context(session, context.workspace_id)


def unbind_tenant(session: Session) -> None:
    session.info.pop(TENANT_INFO_KEY, None)


@contextmanager
def tenant_transaction(session: Session, context: TenantContext) -> Iterator[Session]:
    """Run one committed-or-rolled-back unit of work scoped to ``context``."""

    if not context.workspace_id:
        raise MissingTenantContext("Tenant context requires a workspace id.")

    previous = current_tenant(session)
    if previous is not None and previous != context:
        raise MissingTenantContext("Session is already bound to another tenant context.")

    bind_tenant(session, context)
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        if previous is None:
            unbind_tenant(session)


def _tenant_scoped_classes(state: ORMExecuteState) -> List[type]:
    classes: List[type] = []
    for mapper in state.all_mappers:
        if issubclass(mapper.class_, TenantScoped) and mapper.class_ not in classes:
            classes.append(mapper.class_)
    return classes


def _scope_tenant_queries(state: ORMExecuteState) -> None:
    if not (state.is_select or state.is_update or state.is_delete):
        return
    scoped_classes = _tenant_scoped_classes(state)
    if not scoped_classes:
        return

    context = current_tenant(state.session)
    if context is None:
        raise MissingTenantContext("Tenant context is required for workspace data.")

    if state.is_select and not state.is_column_load:
        # One criteria per entity: the marker class itself has no columns.
        state.statement = state.statement.options(
            *(
                with_loader_criteria(
                    scoped_class,
                    scoped_class.workspace_id == context.workspace_id,
                    include_aliases=True,
                )
                for scoped_class in scoped_classes
            )
        )


def _guard_tenant_writes(session: Session, flush_context, instances) -> None:
    del flush_context, instances
    scoped = [
        instance
        for instance in chain(session.new, session.dirty, session.deleted)
        if isinstance(instance, TenantScoped)
    ]
    if not scoped:
        return

    context = current_tenant(session)
    if context is None:
        raise MissingTenantContext("Tenant context is required for workspace data.")

    for instance in scoped:
        workspace_id = getattr(instance, "workspace_id", None)
        if workspace_id is None and instance in session.new:
            instance.workspace_id = context.workspace_id
        elif workspace_id != context.workspace_id:
            raise MissingTenantContext("Refusing to write a row outside the bound workspace.")


def install_tenant_guards(target: Any) -> Any:
    """Register the query and flush guards on a ``sessionmaker`` (or ``Session`` class)."""

    if not event.contains(target, "do_orm_execute", _scope_tenant_queries):
        event.listen(target, "do_orm_execute", _scope_tenant_queries)
    if not event.contains(target, "before_flush", _guard_tenant_writes):
        event.listen(target, "before_flush", _guard_tenant_writes)
    return target
