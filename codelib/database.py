"""
Graph storage — items, typed edges, item files and categories.

Tables:
  - items: Library nodes (snippet / component / collection), embeddings as JSON
  - edges: Typed directed edges (parent / expansion / belongs_to)
  - item_files: Ordered source files of a component or collection
  - categories: Category vocabulary (feeds the outline taxonomy)

EDGE CONSTRAINTS:
  - (source, target, type, resource) is unique for every edge type.
  - idx_one_parent: a target has at most ONE incoming parent edge. The index
    is partial (WHERE type = 'parent') so expansion / belongs_to edges are
    unaffected. A violation surfaces as ParentConflictError.

Similarity search is a brute-force numpy scan over stored embeddings. It
is fine for thousands of items; a pgvector deployment would push the same
queries into SQL without changing any caller.
"""

import json
import logging
import re
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import (
    create_engine, Column, String, Integer, Text, DateTime, Boolean,
    ForeignKey, Index, UniqueConstraint, func, or_, text,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from .config import get_settings
from .library.clustering import cosine_similarity
from .schemas import (
    Edge, EdgeType, Family, Item, ItemKind, SourceFile, Taxonomy, UseCase,
)

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp (SQLite drops tzinfo, so everything stays naive)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "item"


# ── Exceptions ───────────────────────────────────────────────────────────────

class EdgeConflictError(Exception):
    """An identical edge already exists."""


class ParentConflictError(EdgeConflictError):
    """The target already has a parent (at most one incoming parent edge)."""


class ItemNotFoundError(LookupError):
    """Referenced item does not exist."""


# ── Models ───────────────────────────────────────────────────────────────────

class CategoryModel(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(200), nullable=False, unique=True)
    slug = Column(String(200), nullable=False, unique=True)


class ItemModel(Base):
    """Library item — snippet, component or collection."""
    __tablename__ = "items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    kind = Column(String(20), nullable=False, index=True)
    name = Column(String(300), nullable=False, index=True)
    slug = Column(String(400), nullable=False, unique=True)
    description = Column(Text)
    code = Column(Text)

    # Categorical fields
    category_id = Column(Integer, ForeignKey("categories.id"))
    type = Column(String(100))
    domain = Column(String(100))
    stack = Column(String(100))
    language = Column(String(50))
    libraries = Column(Text)  # JSON array
    tags = Column(Text)  # JSON array
    use_cases = Column(Text)  # JSON array of {title, use}
    entry_file = Column(String(500))

    # Semantic identity
    embedding = Column(Text)  # JSON array of floats
    centroid_embedding = Column(Text)  # JSON array, family parents only
    is_abstract = Column(Boolean, default=False, nullable=False)
    last_coherence_check = Column(DateTime)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class ItemFileModel(Base):
    """Source file of a component / collection, in display order."""
    __tablename__ = "item_files"

    id = Column(Integer, primary_key=True, autoincrement=True)
    item_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    name = Column(String(500), nullable=False)
    code = Column(Text, nullable=False, default="")
    language = Column(String(50))
    position = Column(Integer, default=0)


class EdgeModel(Base):
    """Typed directed edge between two items."""
    __tablename__ = "edges"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    target_id = Column(Integer, ForeignKey("items.id"), nullable=False, index=True)
    type = Column(String(20), nullable=False)
    resource = Column(String(20), nullable=False, default="item")
    meta = Column("metadata", Text)  # JSON object
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("source_id", "target_id", "type", "resource", name="uq_edge"),
        Index(
            "idx_one_parent", "target_id", unique=True,
            sqlite_where=text("type = 'parent'"),
            postgresql_where=text("type = 'parent'"),
        ),
    )


# ── Row → model conversion ───────────────────────────────────────────────────

def _loads(raw: Optional[str]) -> Any:
    return json.loads(raw) if raw else None


def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _to_item(row: ItemModel) -> Item:
    use_cases = _loads(row.use_cases)
    return Item(
        id=row.id,
        kind=ItemKind(row.kind),
        name=row.name,
        slug=row.slug,
        description=row.description,
        code=row.code,
        category_id=row.category_id,
        type=row.type,
        domain=row.domain,
        stack=row.stack,
        language=row.language,
        libraries=_loads(row.libraries),
        tags=_loads(row.tags),
        use_cases=[UseCase(**u) for u in use_cases] if use_cases else None,
        entry_file=row.entry_file,
        embedding=_loads(row.embedding),
        centroid_embedding=_loads(row.centroid_embedding),
        is_abstract=bool(row.is_abstract),
        last_coherence_check=row.last_coherence_check,
        created_at=row.created_at,
    )


def _to_edge(row: EdgeModel) -> Edge:
    return Edge(
        id=row.id,
        source_id=row.source_id,
        target_id=row.target_id,
        type=EdgeType(row.type),
        resource=row.resource,
        metadata=_loads(row.meta) or {},
        created_at=row.created_at,
    )


def _rank(
    rows: Iterable[Tuple[int, Optional[str]]],
    query: List[float],
    threshold: float,
    limit: int,
) -> List[Tuple[int, float]]:
    """Score (id, embedding_json) rows against query; keep sim > threshold, best first."""
    scored = []
    for item_id, raw in rows:
        vec = _loads(raw)
        if not vec:
            continue
        sim = cosine_similarity(query, vec)
        if sim > threshold:
            scored.append((item_id, sim))
    scored.sort(key=lambda pair: pair[1], reverse=True)
    return scored[:limit]


# ── Database class ───────────────────────────────────────────────────────────

class Database:
    """Graph store — items and edges behind a session-per-operation API."""

    def __init__(self, database_url: Optional[str] = None):
        settings = get_settings()
        url = database_url or settings.database_url
        if "aiosqlite" in url:
            url = url.replace("sqlite+aiosqlite", "sqlite")

        kwargs: Dict[str, Any] = {"echo": False}
        if url.startswith("sqlite"):
            # Coherence checks run on worker threads and detached tasks
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool

        self.engine = create_engine(url, **kwargs)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_tables(self):
        """Create all tables (safe to call multiple times)."""
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self) -> Session:
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ── Items ─────────────────────────────────────────────────────────

    def _unique_slug(self, session: Session, name: str) -> str:
        base = f"{slugify(name)}-{int(time.time() * 1000)}"
        slug, n = base, 1
        while session.query(ItemModel.id).filter(ItemModel.slug == slug).first():
            n += 1
            slug = f"{base}-{n}"
        return slug

    def create_item(
        self,
        kind: ItemKind,
        name: str,
        description: Optional[str] = None,
        code: Optional[str] = None,
        *,
        category_id: Optional[int] = None,
        type: Optional[str] = None,
        domain: Optional[str] = None,
        stack: Optional[str] = None,
        language: Optional[str] = None,
        libraries: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        use_cases: Optional[List[UseCase]] = None,
        entry_file: Optional[str] = None,
        embedding: Optional[List[float]] = None,
        centroid_embedding: Optional[List[float]] = None,
        is_abstract: bool = False,
    ) -> Item:
        """Insert an item with a fresh unique slug. Returns the stored item."""
        with self.get_session() as session:
            row = ItemModel(
                kind=ItemKind(kind).value,
                name=name,
                slug=self._unique_slug(session, name),
                description=description,
                code=code,
                category_id=category_id,
                type=type,
                domain=domain,
                stack=stack,
                language=language,
                libraries=_dumps(libraries),
                tags=_dumps(tags),
                use_cases=_dumps([u.model_dump() for u in use_cases]) if use_cases else None,
                entry_file=entry_file,
                embedding=_dumps(embedding),
                centroid_embedding=_dumps(centroid_embedding),
                is_abstract=is_abstract,
            )
            session.add(row)
            session.flush()
            return _to_item(row)

    def _update_item(self, item_id: int, **values) -> bool:
        with self.get_session() as session:
            count = session.query(ItemModel).filter(ItemModel.id == item_id).update(
                values, synchronize_session=False,
            )
            return count > 0

    def set_embedding(self, item_id: int, embedding: Optional[List[float]]) -> bool:
        return self._update_item(item_id, embedding=_dumps(embedding))

    def set_centroid(self, item_id: int, centroid: Optional[List[float]]) -> bool:
        return self._update_item(item_id, centroid_embedding=_dumps(centroid or None))

    def stamp_coherence_check(self, item_id: int, when: Optional[datetime] = None) -> bool:
        return self._update_item(item_id, last_coherence_check=when or utcnow())

    def get_item(self, item_id: int) -> Optional[Item]:
        with self.get_session() as session:
            row = session.get(ItemModel, item_id)
            return _to_item(row) if row else None

    def get_items(self, item_ids: Iterable[int]) -> List[Item]:
        """Items by id, in the order the ids were given (missing ids skipped)."""
        ids = list(item_ids)
        if not ids:
            return []
        with self.get_session() as session:
            rows = session.query(ItemModel).filter(ItemModel.id.in_(ids)).all()
            by_id = {r.id: _to_item(r) for r in rows}
            return [by_id[i] for i in ids if i in by_id]

    def list_items(self, kind: Optional[ItemKind] = None) -> List[Item]:
        with self.get_session() as session:
            q = session.query(ItemModel)
            if kind:
                q = q.filter(ItemModel.kind == ItemKind(kind).value)
            return [_to_item(r) for r in q.order_by(ItemModel.id).all()]

    def delete_item(self, item_id: int) -> bool:
        """Delete an item together with every edge touching it and its files."""
        with self.get_session() as session:
            session.query(EdgeModel).filter(
                or_(EdgeModel.source_id == item_id, EdgeModel.target_id == item_id)
            ).delete(synchronize_session=False)
            session.query(ItemFileModel).filter(
                ItemFileModel.item_id == item_id
            ).delete(synchronize_session=False)
            count = session.query(ItemModel).filter(
                ItemModel.id == item_id
            ).delete(synchronize_session=False)
            return count > 0

    # ── Similarity queries ────────────────────────────────────────────

    def find_by_name_kind(self, name: str, kind: ItemKind) -> List[Item]:
        """Embedded items whose name equals `name` (case-insensitive) with the same kind."""
        with self.get_session() as session:
            rows = session.query(ItemModel).filter(
                func.lower(ItemModel.name) == name.lower(),
                ItemModel.kind == ItemKind(kind).value,
                ItemModel.embedding.isnot(None),
            ).order_by(ItemModel.id).all()
            return [_to_item(r) for r in rows]

    def search_similar(
        self,
        embedding: List[float],
        threshold: float,
        limit: int,
        exclude_ids: Optional[Iterable[int]] = None,
    ) -> List[Tuple[Item, float]]:
        """Items with embedding cosine > threshold, best first, at most `limit`."""
        excluded = set(exclude_ids or [])
        with self.get_session() as session:
            rows = session.query(ItemModel.id, ItemModel.embedding).filter(
                ItemModel.embedding.isnot(None)
            ).all()
        ranked = _rank(((i, e) for i, e in rows if i not in excluded), embedding, threshold, limit)
        return self._attach_items(ranked)

    def find_family_parents_near(
        self,
        centroid: List[float],
        threshold: float,
        limit: int,
        exclude_ids: Optional[Iterable[int]] = None,
    ) -> List[Tuple[Item, float]]:
        """Other family parents whose CENTROID has cosine > threshold to `centroid`."""
        excluded = set(exclude_ids or [])
        with self.get_session() as session:
            parent_ids = session.query(EdgeModel.source_id).filter(
                EdgeModel.type == EdgeType.PARENT.value
            ).distinct()
            rows = session.query(ItemModel.id, ItemModel.centroid_embedding).filter(
                ItemModel.id.in_(parent_ids),
                ItemModel.centroid_embedding.isnot(None),
            ).all()
        ranked = _rank(((i, c) for i, c in rows if i not in excluded), centroid, threshold, limit)
        return self._attach_items(ranked)

    def find_standalones_near(
        self,
        centroid: List[float],
        threshold: float,
        limit: int,
        exclude_ids: Optional[Iterable[int]] = None,
    ) -> List[Tuple[Item, float]]:
        """Embedded items with no parent edge in or out, cosine > threshold to `centroid`."""
        excluded = set(exclude_ids or [])
        with self.get_session() as session:
            in_family = {
                i for pair in session.query(EdgeModel.source_id, EdgeModel.target_id).filter(
                    EdgeModel.type == EdgeType.PARENT.value
                ).all() for i in pair
            }
            rows = session.query(ItemModel.id, ItemModel.embedding).filter(
                ItemModel.embedding.isnot(None)
            ).all()
        candidates = ((i, e) for i, e in rows if i not in in_family and i not in excluded)
        return self._attach_items(_rank(candidates, centroid, threshold, limit))

    def _attach_items(self, ranked: List[Tuple[int, float]]) -> List[Tuple[Item, float]]:
        items = {item.id: item for item in self.get_items(i for i, _ in ranked)}
        return [(items[i], sim) for i, sim in ranked if i in items]

    # ── Edges ─────────────────────────────────────────────────────────

    def add_edge(
        self,
        source_id: int,
        target_id: int,
        type: EdgeType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Edge:
        """
        Insert an edge.

        Raises:
            ValueError: source == target.
            ParentConflictError: a parent edge and the target already has a parent.
            EdgeConflictError: an identical edge already exists.
        """
        if source_id == target_id:
            raise ValueError(f"Self-loop edge on item {source_id}")
        edge_type = EdgeType(type)
        try:
            with self.get_session() as session:
                row = EdgeModel(
                    source_id=source_id,
                    target_id=target_id,
                    type=edge_type.value,
                    resource="item",
                    meta=_dumps(metadata or {}),
                )
                session.add(row)
                session.flush()
                return _to_edge(row)
        except IntegrityError as e:
            if edge_type == EdgeType.PARENT:
                raise ParentConflictError(f"Item {target_id} already has a parent") from e
            raise EdgeConflictError(
                f"{edge_type.value} edge {source_id} → {target_id} already exists"
            ) from e

    def add_edge_if_absent(
        self,
        source_id: int,
        target_id: int,
        type: EdgeType,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Edge]:
        """
        On-conflict-do-nothing insert. Returns the existing identical edge if
        there is one, the new edge otherwise, or None when a parent conflict
        blocked the insert.
        """
        existing = self.get_edges(source_id=source_id, target_id=target_id, type=type)
        if existing:
            return existing[0]
        try:
            return self.add_edge(source_id, target_id, type, metadata)
        except EdgeConflictError as e:
            logger.debug(f"Edge insert skipped: {e}")
            existing = self.get_edges(source_id=source_id, target_id=target_id, type=type)
            return existing[0] if existing else None

    def get_edges(
        self,
        source_id: Optional[int] = None,
        target_id: Optional[int] = None,
        type: Optional[EdgeType] = None,
    ) -> List[Edge]:
        with self.get_session() as session:
            q = session.query(EdgeModel)
            if source_id is not None:
                q = q.filter(EdgeModel.source_id == source_id)
            if target_id is not None:
                q = q.filter(EdgeModel.target_id == target_id)
            if type is not None:
                q = q.filter(EdgeModel.type == EdgeType(type).value)
            return [_to_edge(r) for r in q.order_by(EdgeModel.id).all()]

    def remove_edge(self, source_id: int, target_id: int, type: EdgeType) -> Optional[Edge]:
        """Delete one edge. Returns the removed edge, or None if there was none."""
        with self.get_session() as session:
            row = session.query(EdgeModel).filter(
                EdgeModel.source_id == source_id,
                EdgeModel.target_id == target_id,
                EdgeModel.type == EdgeType(type).value,
            ).first()
            if row is None:
                return None
            edge = _to_edge(row)
            session.delete(row)
            return edge

    def remove_parent_edge(self, child_id: int) -> Optional[Edge]:
        """Detach a child from its parent. Returns the removed edge, if any."""
        parent_id = self.parent_id_of(child_id)
        if parent_id is None:
            return None
        return self.remove_edge(parent_id, child_id, EdgeType.PARENT)

    def child_ids(self, parent_id: int) -> List[int]:
        """Direct children via parent edges, in link order."""
        with self.get_session() as session:
            rows = session.query(EdgeModel.target_id).filter(
                EdgeModel.source_id == parent_id,
                EdgeModel.type == EdgeType.PARENT.value,
            ).order_by(EdgeModel.id).all()
            return [r[0] for r in rows]

    def parent_id_of(self, child_id: int) -> Optional[int]:
        with self.get_session() as session:
            row = session.query(EdgeModel.source_id).filter(
                EdgeModel.target_id == child_id,
                EdgeModel.type == EdgeType.PARENT.value,
            ).first()
            return row[0] if row else None

    def get_family(self, parent_id: int) -> Optional[Family]:
        """Parent + direct children, re-read from storage. None if the parent is gone."""
        parent = self.get_item(parent_id)
        if parent is None:
            return None
        return Family(parent=parent, children=self.get_items(self.child_ids(parent_id)))

    # ── Multi-row surgery (single transaction each) ───────────────────

    def split_family(self, root_id: int, new_parent_id: int, child_ids: List[int]) -> None:
        """
        Re-point `child_ids` from root to new_parent and hang new_parent under
        root — all or nothing.
        """
        try:
            with self.get_session() as session:
                # Query-level delete runs immediately, so the one-parent index
                # is free before the new edges are flushed
                session.query(EdgeModel).filter(
                    EdgeModel.source_id == root_id,
                    EdgeModel.target_id.in_(child_ids),
                    EdgeModel.type == EdgeType.PARENT.value,
                ).delete(synchronize_session=False)
                for child_id in child_ids:
                    session.add(EdgeModel(
                        source_id=new_parent_id, target_id=child_id,
                        type=EdgeType.PARENT.value, resource="item", meta=_dumps({}),
                    ))
                session.add(EdgeModel(
                    source_id=root_id, target_id=new_parent_id,
                    type=EdgeType.PARENT.value, resource="item", meta=_dumps({}),
                ))
        except IntegrityError as e:
            raise ParentConflictError(
                f"Split of family {root_id} into {new_parent_id} conflicted"
            ) from e

    def merge_families(self, keeper_id: int, absorbed_id: int) -> List[int]:
        """
        Move every child of `absorbed_id` under `keeper_id` in one transaction.

        An abstract absorbed parent is deleted (edges included). A concrete one
        is demoted to a child of the keeper unless it already has a parent.
        Returns the moved child ids.
        """
        try:
            with self.get_session() as session:
                absorbed = session.get(ItemModel, absorbed_id)
                if absorbed is None:
                    raise ItemNotFoundError(f"Item {absorbed_id} not found")

                moved = [r[0] for r in session.query(EdgeModel.target_id).filter(
                    EdgeModel.source_id == absorbed_id,
                    EdgeModel.type == EdgeType.PARENT.value,
                ).order_by(EdgeModel.id).all()]
                session.query(EdgeModel).filter(
                    EdgeModel.source_id == absorbed_id,
                    EdgeModel.type == EdgeType.PARENT.value,
                ).delete(synchronize_session=False)

                moved = [c for c in moved if c != keeper_id]
                for child_id in moved:
                    session.add(EdgeModel(
                        source_id=keeper_id, target_id=child_id,
                        type=EdgeType.PARENT.value, resource="item", meta=_dumps({}),
                    ))

                if absorbed.is_abstract:
                    session.flush()
                    session.query(EdgeModel).filter(or_(
                        EdgeModel.source_id == absorbed_id,
                        EdgeModel.target_id == absorbed_id,
                    )).delete(synchronize_session=False)
                    session.query(ItemFileModel).filter(
                        ItemFileModel.item_id == absorbed_id
                    ).delete(synchronize_session=False)
                    session.delete(absorbed)
                else:
                    has_parent = session.query(EdgeModel.id).filter(
                        EdgeModel.target_id == absorbed_id,
                        EdgeModel.type == EdgeType.PARENT.value,
                    ).first()
                    if not has_parent:
                        session.add(EdgeModel(
                            source_id=keeper_id, target_id=absorbed_id,
                            type=EdgeType.PARENT.value, resource="item", meta=_dumps({}),
                        ))
                return moved
        except IntegrityError as e:
            raise ParentConflictError(
                f"Merge of family {absorbed_id} into {keeper_id} conflicted"
            ) from e

    # ── Files & taxonomy ──────────────────────────────────────────────

    def add_item_files(self, item_id: int, files: List[SourceFile]) -> int:
        with self.get_session() as session:
            start = session.query(func.count(ItemFileModel.id)).filter(
                ItemFileModel.item_id == item_id
            ).scalar() or 0
            for offset, f in enumerate(files):
                session.add(ItemFileModel(
                    item_id=item_id, name=f.name, code=f.code,
                    language=f.language, position=start + offset,
                ))
        return len(files)

    def get_item_files(self, item_id: int) -> List[SourceFile]:
        with self.get_session() as session:
            rows = session.query(ItemFileModel).filter(
                ItemFileModel.item_id == item_id
            ).order_by(ItemFileModel.position, ItemFileModel.id).all()
            return [SourceFile(name=r.name, code=r.code or "", language=r.language) for r in rows]

    def get_or_create_category(self, name: str) -> int:
        with self.get_session() as session:
            row = session.query(CategoryModel).filter(
                func.lower(CategoryModel.name) == name.lower()
            ).first()
            if row is None:
                row = CategoryModel(name=name, slug=slugify(name))
                session.add(row)
                session.flush()
            return row.id

    def get_taxonomy(self, kind: Optional[ItemKind] = None) -> Taxonomy:
        """Distinct vocabulary already in use, sorted. `kind` narrows item fields."""
        with self.get_session() as session:
            def items_query(column):
                query = session.query(column).filter(column.isnot(None))
                if kind is not None:
                    query = query.filter(ItemModel.kind == ItemKind(kind).value)
                return query

            def distinct(column) -> List[str]:
                return sorted({v[0] for v in items_query(column).distinct().all() if v[0]})

            tags = set()
            for (raw,) in items_query(ItemModel.tags).all():
                tags.update(t for t in (_loads(raw) or []) if t)

            categories = session.query(CategoryModel.name).filter(CategoryModel.name.isnot(None))
            if kind is not None:
                used = items_query(ItemModel.category_id).distinct()
                categories = categories.filter(CategoryModel.id.in_(used))

            return Taxonomy(
                types=distinct(ItemModel.type),
                domains=distinct(ItemModel.domain),
                stacks=distinct(ItemModel.stack),
                languages=distinct(ItemModel.language),
                tags=sorted(tags),
                categories=sorted({c[0] for c in categories.distinct().all() if c[0]}),
            )


# ── Singleton ────────────────────────────────────────────────────────────────

_db: Optional[Database] = None


def get_database() -> Database:
    """Get or create database instance."""
    global _db
    if _db is None:
        _db = Database()
        _db.create_tables()
    return _db
