"""
Expansion reconciler: how much of the tree is materialized and expanded, and
how that survives a reload.

Components:
- TreeArena: nodes indexed by key with child-key lists, so attaching fetched
  children is a slot write instead of a rebuild of every ancestor list
- ReportStore: state container with a single mutation entry point
  (dispatch). Its reducer enforces the busy guard: no operation may start
  while a load, restore or expand/collapse is in flight.
- ExpansionReconciler: load / restore / toggle / view changes on top of the
  store and an async level fetcher
- ViewStatePersistence: writes expanded keys and view params to a key-value
  store on change, never while initializing or restoring

State Machine:
    UNINITIALIZED -> LOADING -> IDLE
    IDLE -> RESTORING -> IDLE           (once per page load, persisted keys)
    IDLE -> EXPANDING / COLLAPSING -> IDLE
    IDLE -> LOADING -> IDLE             (reload, sort change)

Restore Algorithm:
1. Group persisted keys by depth; process depths in ascending order.
2. Per depth: keys not present in the arena are dropped. Found nodes that
   can have children but have none materialized are fetched concurrently
   (batched by level_fetch_batch_size, each fetch under a timeout).
3. Settle all fetches; a failed fetch logs a warning and contributes [].
4. Merge the level in one dispatch before the next depth reads the arena.
5. Commit the expanded-key set once, after the last depth.

A cancellation event is checked at the start of each depth and before each
merge; a cancelled restore commits no keys. Restore runs at most once per
reconciler (page load); a reload restores its keys into the new tree before
the tree is installed, so no state ever pairs expanded keys with an arena
that lacks their children.

Persisted Format:
    expanded=NO,NO::Flex Repair,NO::Spring%2C Summer
    dimensions=country,product  sortBy=subscriptions  sortDir=descend
    start=2024-01-01  end=2024-01-31

Commas and percent signs inside a key are percent-encoded.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from typing import (
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)
from urllib.parse import unquote

from pivot_report.core.config import Settings, get_settings
from pivot_report.models.enums import QuerySortDirection, ReconcilerState, SortDirection
from pivot_report.models.schemas import DateRange, RowQuery, TableFilter, TreeNode
from pivot_report.services.tree_builder import (
    group_keys_by_depth,
    key_depth,
    parse_key_to_parent_filters,
)


logger = logging.getLogger(__name__)


LevelFetcher = Callable[[RowQuery], Awaitable[List[TreeNode]]]

BUSY_STATES = frozenset({
    ReconcilerState.LOADING,
    ReconcilerState.RESTORING,
    ReconcilerState.EXPANDING,
    ReconcilerState.COLLAPSING,
})


# =============================================================================
# Exceptions
# =============================================================================


class ReconcilerError(Exception):
    """Base class for expansion reconciler errors."""


class ReconcilerBusyError(ReconcilerError):
    """An operation was requested while another one is in flight."""

    def __init__(self, requested: ReconcilerState, current: ReconcilerState):
        super().__init__(f"Cannot start {requested.value} while {current.value}")
        self.requested = requested
        self.current = current


class RestoreAlreadyRanError(ReconcilerError):
    """Persisted keys were already restored once for this page load."""

    def __init__(self):
        super().__init__("Expanded keys were already restored for this page load")


class ChildFetchError(ReconcilerError):
    """Fetching one node's children failed during a single-node expand."""

    def __init__(self, key: str):
        super().__init__(f"Failed to load children for {key!r}")
        self.key = key


# =============================================================================
# Persisted Key Codec
# =============================================================================


def _escape_key(key: str) -> str:
    return key.replace('%', '%25').replace(',', '%2C')


def encode_expanded_keys(keys: Iterable[str]) -> Optional[str]:
    """Comma-join escaped keys; None when there are none (parameter absent)."""
    joined = ','.join(_escape_key(key) for key in dict.fromkeys(keys))
    return joined or None


def decode_expanded_keys(raw: Optional[str]) -> List[str]:
    """Split a persisted key list, dropping blanks and duplicates."""
    if not raw:
        return []
    return list(dict.fromkeys(unquote(part) for part in raw.split(',') if part))


# =============================================================================
# Tree Arena
# =============================================================================


@dataclass
class ArenaSlot:
    node: TreeNode
    parent_key: Optional[str]
    child_keys: Optional[List[str]] = None


class TreeArena:
    """
    Tree nodes indexed by key.

    Slots store nodes without their children; child_keys is None while a
    node's children have not been fetched and a (possibly empty) list after.
    """

    def __init__(self) -> None:
        self._slots: Dict[str, ArenaSlot] = {}
        self._roots: List[str] = []

    @classmethod
    def from_nodes(cls, nodes: Sequence[TreeNode]) -> "TreeArena":
        arena = cls()
        arena._roots = [arena._insert(node, None) for node in nodes]
        return arena

    def _insert(self, node: TreeNode, parent_key: Optional[str]) -> str:
        slot = ArenaSlot(node=node.model_copy(update={'children': None}), parent_key=parent_key)
        self._slots[node.key] = slot
        if node.children is not None:
            slot.child_keys = [self._insert(child, node.key) for child in node.children]
        return node.key

    def _drop_descendants(self, key: str) -> None:
        slot = self._slots[key]
        for child_key in slot.child_keys or []:
            if child_key in self._slots:
                self._drop_descendants(child_key)
                del self._slots[child_key]
        slot.child_keys = None

    def __contains__(self, key: object) -> bool:
        return key in self._slots

    def __len__(self) -> int:
        return len(self._slots)

    @property
    def root_keys(self) -> List[str]:
        return list(self._roots)

    def node(self, key: str) -> Optional[TreeNode]:
        slot = self._slots.get(key)
        return slot.node if slot is not None else None

    def is_materialized(self, key: str) -> bool:
        slot = self._slots.get(key)
        return slot is not None and slot.child_keys is not None

    def set_children(self, key: str, children: Sequence[TreeNode]) -> None:
        """Replace one node's children; siblings and other branches are untouched."""
        slot = self._slots.get(key)
        if slot is None:
            return
        self._drop_descendants(key)
        slot.child_keys = [self._insert(child, key) for child in children]

    def update_has_children(self, dimension_count: int) -> None:
        for slot in self._slots.values():
            has_children = slot.node.depth < dimension_count - 1
            if slot.node.hasChildren != has_children:
                slot.node = slot.node.model_copy(update={'hasChildren': has_children})

    def _materialize(self, key: str) -> TreeNode:
        slot = self._slots[key]
        if slot.child_keys is None:
            return slot.node.model_copy()
        children = [self._materialize(child_key) for child_key in slot.child_keys]
        return slot.node.model_copy(update={'children': children})

    def to_tree(self) -> List[TreeNode]:
        """Nested TreeNodes, roots in order."""
        return [self._materialize(key) for key in self._roots]


def _merge_children(arena: TreeArena, children: Dict[str, List[TreeNode]]) -> None:
    for key, nodes in children.items():
        arena.set_children(key, nodes)


# =============================================================================
# State Container
# =============================================================================


@dataclass(frozen=True)
class ViewParams:
    """What the user is looking at: the inputs of a root-level load."""
    date_range: DateRange
    dimensions: Tuple[str, ...]
    sort_by: Optional[str] = None
    sort_direction: Optional[SortDirection] = SortDirection.DESCEND
    filters: Tuple[TableFilter, ...] = ()

    @classmethod
    def defaults(
        cls,
        date_range: DateRange,
        sales: bool = False,
        settings: Optional[Settings] = None,
    ) -> "ViewParams":
        """Default view of the marketing report (or the sales dashboard)."""
        settings = settings or get_settings()
        if sales:
            dimensions = settings.default_sales_dimensions
            sort_by = settings.default_sales_sort_column
        else:
            dimensions = settings.default_marketing_dimensions
            sort_by = settings.default_sort_column
        return cls(
            date_range=date_range,
            dimensions=tuple(dimensions),
            sort_by=sort_by,
            sort_direction=SortDirection(settings.default_sort_direction),
        )


@dataclass(frozen=True)
class ReportState:
    view: ViewParams
    status: ReconcilerState = ReconcilerState.UNINITIALIZED
    arena: TreeArena = field(default_factory=TreeArena)
    expanded_keys: Tuple[str, ...] = ()
    loaded_view: Optional[ViewParams] = None
    initialized: bool = False
    has_restored_once: bool = False

    @property
    def has_loaded_once(self) -> bool:
        return self.loaded_view is not None


# Actions

@dataclass(frozen=True)
class OperationStarted:
    status: ReconcilerState


@dataclass(frozen=True)
class OperationFinished:
    pass


@dataclass(frozen=True)
class TreeLoaded:
    arena: TreeArena
    view: ViewParams
    expanded_keys: Tuple[str, ...]


@dataclass(frozen=True)
class ChildrenMerged:
    children: Dict[str, List[TreeNode]]


@dataclass(frozen=True)
class ExpandedKeysSet:
    keys: Tuple[str, ...]


@dataclass(frozen=True)
class ViewChanged:
    view: ViewParams


@dataclass(frozen=True)
class Initialized:
    pass


def _resting_status(state: ReportState) -> ReconcilerState:
    return ReconcilerState.IDLE if state.has_loaded_once else ReconcilerState.UNINITIALIZED


def reduce(state: ReportState, action: object) -> ReportState:
    """
    Apply one action to the report state.

    Raises:
        ReconcilerBusyError: OperationStarted while another operation runs.
        RestoreAlreadyRanError: A second restore for the same page load.
    """
    if isinstance(action, OperationStarted):
        if state.status in BUSY_STATES:
            raise ReconcilerBusyError(action.status, state.status)
        if action.status == ReconcilerState.RESTORING and state.has_restored_once:
            raise RestoreAlreadyRanError()
        restored = state.has_restored_once or action.status == ReconcilerState.RESTORING
        return replace(state, status=action.status, has_restored_once=restored)

    if isinstance(action, OperationFinished):
        return replace(state, status=_resting_status(state))

    if isinstance(action, TreeLoaded):
        return replace(
            state,
            arena=action.arena,
            loaded_view=action.view,
            expanded_keys=action.expanded_keys,
        )

    if isinstance(action, ChildrenMerged):
        _merge_children(state.arena, action.children)
        return state

    if isinstance(action, ExpandedKeysSet):
        return replace(state, expanded_keys=tuple(dict.fromkeys(action.keys)))

    if isinstance(action, ViewChanged):
        if state.has_loaded_once and action.view.dimensions != state.view.dimensions:
            state.arena.update_has_children(len(action.view.dimensions))
        return replace(state, view=action.view)

    if isinstance(action, Initialized):
        return replace(state, initialized=True)

    raise TypeError(f"Unknown action: {action!r}")


Listener = Callable[[ReportState, ReportState], None]


class ReportStore:
    """Holds the report state; dispatch() is the only way to change it."""

    def __init__(self, initial: ReportState):
        self._state = initial
        self._listeners: List[Listener] = []

    @property
    def state(self) -> ReportState:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def dispatch(self, action: object) -> ReportState:
        previous = self._state
        self._state = reduce(previous, action)
        for listener in list(self._listeners):
            listener(previous, self._state)
        return self._state


# =============================================================================
# Persistence
# =============================================================================


class KeyValueStore(Protocol):
    """Where view state is persisted (URL query parameters, saved view blob)."""

    def get(self, name: str) -> Optional[str]: ...

    def set_many(self, values: Dict[str, Optional[str]]) -> None: ...


class InMemoryKeyValueStore:
    """KeyValueStore backed by a dict; None values remove the parameter."""

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self.values: Dict[str, str] = dict(values or {})
        self.write_count = 0

    def get(self, name: str) -> Optional[str]:
        return self.values.get(name)

    def set_many(self, values: Dict[str, Optional[str]]) -> None:
        self.write_count += 1
        for name, value in values.items():
            if value is None:
                self.values.pop(name, None)
            else:
                self.values[name] = value


class ViewStatePersistence:
    """
    Serializes expanded keys and view params whenever they change.

    Suppressed while the report is uninitialized or restoring, and for one
    event-loop tick after initialization completes so the state just read
    from the store is not written straight back.
    """

    def __init__(self, store: KeyValueStore, expanded_param: Optional[str] = None):
        self.store = store
        self.expanded_param = expanded_param or get_settings().expanded_param
        self._held = False

    def attach(self, report_store: ReportStore) -> Callable[[], None]:
        return report_store.subscribe(self.on_change)

    def read_expanded_keys(self) -> List[str]:
        return decode_expanded_keys(self.store.get(self.expanded_param))

    def read_view(self, default: ViewParams) -> ViewParams:
        """
        View params saved alongside the expanded keys, over `default`.

        Each param group applies only when present: the date range needs
        both ends and a valid order, a sort column takes its direction from
        sortDir ('ascend'/'descend', otherwise no direction).
        """
        view = default

        start, end = self.store.get('start'), self.store.get('end')
        if start and end:
            try:
                view = replace(view, date_range=DateRange(start=start, end=end))
            except ValueError as e:
                logger.warning(f"Ignoring persisted date range {start}..{end}: {e}")

        dimensions = [dim for dim in (self.store.get('dimensions') or '').split(',') if dim]
        if dimensions:
            view = replace(view, dimensions=tuple(dimensions))

        sort_by = self.store.get('sortBy')
        if sort_by:
            sort_dir = self.store.get('sortDir')
            direction = SortDirection(sort_dir) if sort_dir in ('ascend', 'descend') else None
            view = replace(view, sort_by=sort_by, sort_direction=direction)

        return view

    def encode(self, state: ReportState) -> Dict[str, Optional[str]]:
        view = state.view
        return {
            self.expanded_param: encode_expanded_keys(state.expanded_keys),
            'dimensions': ','.join(view.dimensions) or None,
            'sortBy': view.sort_by,
            'sortDir': view.sort_direction.value if view.sort_direction else None,
            'start': view.date_range.start.isoformat(),
            'end': view.date_range.end.isoformat(),
        }

    def _hold_one_tick(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._held = True
        loop.call_soon(self._release)

    def _release(self) -> None:
        self._held = False

    def on_change(self, previous: ReportState, current: ReportState) -> None:
        if not current.initialized:
            return
        if current.status in (ReconcilerState.UNINITIALIZED, ReconcilerState.RESTORING):
            return
        if not previous.initialized:
            self._hold_one_tick()
            return
        if self._held:
            return
        if previous.expanded_keys == current.expanded_keys and previous.view == current.view:
            return
        self.store.set_many(self.encode(current))


# =============================================================================
# Reconciler
# =============================================================================


@dataclass(frozen=True)
class RestoreResult:
    expanded_keys: Tuple[str, ...] = ()
    dropped_keys: Tuple[str, ...] = ()
    failed_keys: Tuple[str, ...] = ()
    cancelled: bool = False


class ExpansionReconciler:
    """
    Drives loading, restoring and expanding a report tree.

    Args:
        fetch_level: Async collaborator returning the TreeNodes of one level
            for a RowQuery (depth 0 for roots, parent filters for children).
        view: Initial view parameters.
        settings: Source of batch size, fetch timeout and parameter name.
        persistence: Optional writer of the expanded-key set.

    Example:
        reconciler = ExpansionReconciler(source.fetch_level, view)
        await reconciler.initialize()
        expanded = await reconciler.toggle('NO')
    """

    def __init__(
        self,
        fetch_level: LevelFetcher,
        view: ViewParams,
        settings: Optional[Settings] = None,
        persistence: Optional[ViewStatePersistence] = None,
    ):
        settings = settings or get_settings()
        self._fetch_level = fetch_level
        self._batch_size = max(1, settings.level_fetch_batch_size)
        self._timeout = settings.child_fetch_timeout_seconds
        self._initializing = False
        self.store = ReportStore(ReportState(view=view))
        self.persistence = persistence
        if persistence is not None:
            persistence.attach(self.store)

    # -------------------------------------------------------------------------
    # Read access
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ReportState:
        return self.store.state

    @property
    def status(self) -> ReconcilerState:
        return self.store.state.status

    @property
    def expanded_keys(self) -> Tuple[str, ...]:
        return self.store.state.expanded_keys

    def tree(self) -> List[TreeNode]:
        return self.store.state.arena.to_tree()

    # -------------------------------------------------------------------------
    # Fetching
    # -------------------------------------------------------------------------

    def _query(self, view: ViewParams, depth: int, parent_key: Optional[str] = None) -> RowQuery:
        parent_filters = (
            parse_key_to_parent_filters(parent_key, view.dimensions) if parent_key else {}
        )
        return RowQuery(
            dateRange=view.date_range,
            dimensions=list(view.dimensions),
            depth=depth,
            parentFilters=parent_filters,
            filters=list(view.filters),
            sortBy=view.sort_by,
            sortDirection=QuerySortDirection.from_ui(view.sort_direction),
        )

    async def _fetch_children(self, view: ViewParams, key: str) -> List[TreeNode]:
        query = self._query(view, key_depth(key) + 1, key)
        return await asyncio.wait_for(self._fetch_level(query), timeout=self._timeout)

    async def _settle_children(
        self,
        view: ViewParams,
        keys: Sequence[str],
    ) -> Tuple[Dict[str, List[TreeNode]], List[str]]:
        """
        Fetch children for every key, batch by batch, never failing the level.

        Returns:
            (children by key, failed keys). Failed keys map to [].
        """
        children: Dict[str, List[TreeNode]] = {}
        failed: List[str] = []
        for start in range(0, len(keys), self._batch_size):
            batch = keys[start:start + self._batch_size]
            results = await asyncio.gather(
                *(self._fetch_children(view, key) for key in batch),
                return_exceptions=True,
            )
            for key, result in zip(batch, results):
                if isinstance(result, BaseException):
                    logger.warning(f"Failed to load children for {key!r}: {result!r}")
                    failed.append(key)
                    children[key] = []
                else:
                    children[key] = list(result)
        return children, failed

    # -------------------------------------------------------------------------
    # Load
    # -------------------------------------------------------------------------

    async def initialize(self, cancel_event: Optional[asyncio.Event] = None) -> Optional[RestoreResult]:
        """
        First load of the page: read persisted view params and keys, load
        roots for that view, restore once.

        Returns:
            The RestoreResult when persisted keys were restored, else None.
        """
        saved: List[str] = []
        if self.persistence is not None:
            view = self.persistence.read_view(self.state.view)
            if view != self.state.view:
                self.store.dispatch(ViewChanged(view))
            saved = self.persistence.read_expanded_keys()
        self._initializing = True
        try:
            await self._load(auto_expand=not saved)
            result = None
            if saved and not self.state.has_restored_once:
                result = await self.restore(saved, cancel_event)
        finally:
            self._initializing = False
        self.store.dispatch(Initialized())
        return result

    async def load(self) -> List[TreeNode]:
        """
        (Re)load the root level for the current view.

        A fresh load, or one with a changed dimension list, auto-expands every
        root that has children. Otherwise the expanded keys are restored
        against the new tree.

        Raises:
            ReconcilerBusyError: Another operation is in flight.
            Exception: Whatever the root fetch raised; the previous tree
                stays installed.
        """
        await self._load()
        if not self.state.initialized and not self._initializing:
            self.store.dispatch(Initialized())
        return self.tree()

    async def _load(self, auto_expand: Optional[bool] = None, clear_expanded: bool = False) -> None:
        state = self.store.state
        view = state.view
        saved = [] if clear_expanded else list(state.expanded_keys)
        dimensions_changed = (
            state.loaded_view is not None and state.loaded_view.dimensions != view.dimensions
        )
        if auto_expand is None:
            auto_expand = not saved or dimensions_changed

        self.store.dispatch(OperationStarted(ReconcilerState.LOADING))
        try:
            try:
                roots = await self._fetch_level(self._query(view, 0))
            except Exception:
                logger.error("Failed to load root level", exc_info=True)
                raise

            # The new tree is filled in before it is installed
            arena = TreeArena.from_nodes(roots)
            keep = () if dimensions_changed else tuple(saved)
            expanded: Tuple[str, ...] = ()

            if auto_expand and roots:
                unfetched = [node.key for node in roots if node.hasChildren and node.children is None]
                children, _ = await self._settle_children(view, unfetched)
                _merge_children(arena, children)
                expanded = tuple(node.key for node in roots if node.hasChildren)
            elif keep:
                result = await self._restore_levels(view, keep, None, arena=arena)
                expanded = result.expanded_keys

            self.store.dispatch(TreeLoaded(arena, view, expanded))
        finally:
            self.store.dispatch(OperationFinished())

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    async def restore(
        self,
        keys: Sequence[str],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> RestoreResult:
        """
        Restore persisted expanded keys against the loaded tree.

        Raises:
            ReconcilerBusyError: Another operation (including another restore)
                is in flight.
            RestoreAlreadyRanError: Keys were already restored once; later
                reloads restore the current keys themselves.
        """
        self.store.dispatch(OperationStarted(ReconcilerState.RESTORING))
        try:
            view = self.state.loaded_view or self.state.view
            unique_keys = list(dict.fromkeys(key for key in keys if key))
            result = await self._restore_levels(view, unique_keys, cancel_event)
            if not result.cancelled:
                self.store.dispatch(ExpandedKeysSet(result.expanded_keys))
                logger.info(
                    f"Restored {len(result.expanded_keys)} expanded keys "
                    f"({len(result.dropped_keys)} dropped, {len(result.failed_keys)} failed)"
                )
            return result
        finally:
            self.store.dispatch(OperationFinished())

    async def _restore_levels(
        self,
        view: ViewParams,
        keys: Sequence[str],
        cancel_event: Optional[asyncio.Event],
        arena: Optional[TreeArena] = None,
    ) -> RestoreResult:
        """
        Resolve keys depth by depth. Merges go through the store, or straight
        into `arena` when restoring into a tree that is not installed yet.
        """
        found: List[str] = []
        dropped: List[str] = []
        failed: List[str] = []

        def cancelled() -> bool:
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Restore cancelled; {len(found)} keys resolved so far")
                return True
            return False

        for depth, level_keys in group_keys_by_depth(list(keys)).items():
            if cancelled():
                return RestoreResult(tuple(found), tuple(dropped), tuple(failed), cancelled=True)

            current = arena if arena is not None else self.store.state.arena
            to_fetch: List[str] = []
            empty: Dict[str, List[TreeNode]] = {}
            for key in level_keys:
                node = current.node(key)
                if node is None:
                    logger.debug(f"Dropping stale expanded key {key!r}")
                    dropped.append(key)
                    continue
                found.append(key)
                if current.is_materialized(key):
                    continue
                if node.hasChildren:
                    to_fetch.append(key)
                else:
                    empty[key] = []

            children, level_failed = await self._settle_children(view, to_fetch)
            failed.extend(level_failed)

            if cancelled():
                return RestoreResult(tuple(found), tuple(dropped), tuple(failed), cancelled=True)

            children.update(empty)
            if not children:
                continue
            if arena is None:
                self.store.dispatch(ChildrenMerged(children))
            else:
                _merge_children(arena, children)

        return RestoreResult(tuple(found), tuple(dropped), tuple(failed))

    # -------------------------------------------------------------------------
    # Single-node expand / collapse
    # -------------------------------------------------------------------------

    async def toggle(self, key: str) -> bool:
        """
        Expand or collapse one node.

        Returns:
            True if the node is expanded afterwards, False if collapsed.

        Raises:
            ReconcilerBusyError: A restore or another operation is in flight.
            ReconcilerError: The key is not in the tree.
            ChildFetchError: The children fetch failed; the node stays collapsed.
        """
        state = self.store.state
        if key in state.expanded_keys:
            self.store.dispatch(OperationStarted(ReconcilerState.COLLAPSING))
            try:
                self.store.dispatch(ExpandedKeysSet(tuple(k for k in state.expanded_keys if k != key)))
            finally:
                self.store.dispatch(OperationFinished())
            return False

        node = state.arena.node(key)
        if node is None:
            raise ReconcilerError(f"Unknown node {key!r}")

        self.store.dispatch(OperationStarted(ReconcilerState.EXPANDING))
        try:
            if not state.arena.is_materialized(key):
                children: List[TreeNode] = []
                if node.hasChildren:
                    view = state.loaded_view or state.view
                    try:
                        children = await self._fetch_children(view, key)
                    except Exception as exc:
                        logger.warning(f"Failed to load children for {key!r}: {exc!r}")
                        raise ChildFetchError(key) from exc
                self.store.dispatch(ChildrenMerged({key: list(children)}))
            self.store.dispatch(ExpandedKeysSet(self.store.state.expanded_keys + (key,)))
        finally:
            self.store.dispatch(OperationFinished())
        return True

    # -------------------------------------------------------------------------
    # View changes
    # -------------------------------------------------------------------------

    def set_dimensions(self, dimensions: Sequence[str]) -> None:
        """Change the dimension list; hasChildren is updated on the loaded tree."""
        self._ensure_idle()
        view = replace(self.state.view, dimensions=tuple(dimensions))
        self.store.dispatch(ViewChanged(view))

    def set_date_range(self, date_range: DateRange) -> None:
        self._ensure_idle()
        self.store.dispatch(ViewChanged(replace(self.state.view, date_range=date_range)))

    def set_filters(self, filters: Sequence[TableFilter]) -> None:
        """
        Change the table filters for the next load. Until then, children are
        still fetched with the filters the current tree was loaded with.
        """
        self._ensure_idle()
        kept = tuple(f for f in filters if f.value)
        self.store.dispatch(ViewChanged(replace(self.state.view, filters=kept)))

    async def set_sort(self, sort_by: Optional[str], direction: Optional[SortDirection]) -> None:
        """Change the sort; once loaded, reloads the roots and clears expansion."""
        self._ensure_idle()
        view = replace(self.state.view, sort_by=sort_by, sort_direction=direction)
        self.store.dispatch(ViewChanged(view))
        if self.state.has_loaded_once:
            await self._load(auto_expand=False, clear_expanded=True)

    def _ensure_idle(self) -> None:
        status = self.state.status
        if status in BUSY_STATES:
            raise ReconcilerBusyError(ReconcilerState.IDLE, status)


__all__ = [
    'ReconcilerError',
    'ReconcilerBusyError',
    'RestoreAlreadyRanError',
    'ChildFetchError',
    'encode_expanded_keys',
    'decode_expanded_keys',
    'ArenaSlot',
    'TreeArena',
    'ViewParams',
    'ReportState',
    'ReportStore',
    'reduce',
    'KeyValueStore',
    'InMemoryKeyValueStore',
    'ViewStatePersistence',
    'RestoreResult',
    'ExpansionReconciler',
]
