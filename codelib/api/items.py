"""Items router -- decomposition, manual parent links and coherence triggers.

Not a CRUD layer: items are created by the decomposition pipeline. These
routes start work on existing items and expose the family view the
coherence engine maintains. /check-similarity previews matches for a draft.
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException

from codelib.api.dependencies import DB, Cascade, Pipeline, Scheduler
from codelib.api.schemas import (
    CoherenceAccepted, FamilyResponse, LinkRequest, SimilarityRequest, SimilarityResponse,
)
from codelib.database import ItemNotFoundError, ParentConflictError
from codelib.library.clustering import average_pairwise_similarity
from codelib.schemas import Edge, EdgeType, HierarchyResult, ItemKind, ItemRef, Piece, Taxonomy

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/meta", response_model=Taxonomy)
async def get_meta(db: DB, kind: Optional[ItemKind] = None):
    """Vocabulary already in use (types, domains, stacks, languages, tags, categories)."""
    return db.get_taxonomy(kind)


@router.post("/check-similarity", response_model=SimilarityResponse)
async def check_similarity(body: SimilarityRequest, cascade: Cascade):
    """Reranked library matches for a draft item, with their family context."""
    if not body.name.strip() or not body.code.strip():
        raise HTTPException(status_code=400, detail="name and code are required")

    piece = Piece(**body.model_dump())
    embedding = await cascade.embed(piece.embedding_text)
    if not embedding:
        return SimilarityResponse()
    return SimilarityResponse(data=cascade.find_candidates(piece, embedding))


@router.post("/{item_id}/decompose", response_model=HierarchyResult, status_code=201)
async def decompose_item(item_id: int, db: DB, pipeline: Pipeline):
    """Outline the item's files and resolve every piece against the library."""
    item = db.get_item(item_id)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Item {item_id} not found")
    if not pipeline.load_source_files(item):
        raise HTTPException(status_code=400, detail=f"Item {item_id} has no source files")

    try:
        return await pipeline.decompose_item(item_id)
    except ItemNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        logger.error(f"Decomposition of item {item_id} failed: {e}")
        raise HTTPException(status_code=502, detail=f"Decomposition failed: {e}")


@router.post("/{item_id}/link", response_model=Edge)
async def link_to_parent(item_id: int, body: LinkRequest, db: DB, scheduler: Scheduler):
    """Hang the item under a parent. An item has at most one parent."""
    if body.parent_id <= 0:
        raise HTTPException(status_code=400, detail="Invalid parent id")
    if body.parent_id == item_id:
        raise HTTPException(status_code=400, detail="An item cannot be its own parent")
    if db.get_item(item_id) is None:
        raise HTTPException(status_code=404, detail=f"Item {item_id} not found")
    if db.get_item(body.parent_id) is None:
        raise HTTPException(status_code=404, detail=f"Parent {body.parent_id} not found")

    try:
        edge = db.add_edge(body.parent_id, item_id, EdgeType.PARENT)
    except ParentConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info(f"Linked item {item_id} under parent {body.parent_id}")
    scheduler.schedule(body.parent_id)
    return edge


@router.delete("/{item_id}/unlink", response_model=Edge)
async def unlink_from_parent(item_id: int, db: DB, scheduler: Scheduler):
    """Detach the item from its parent; the former family is re-checked."""
    edge = db.remove_parent_edge(item_id)
    if edge is None:
        raise HTTPException(status_code=404, detail=f"Item {item_id} has no parent")

    logger.info(f"Unlinked item {item_id} from parent {edge.source_id}")
    scheduler.schedule(edge.source_id)
    return edge


@router.post("/{item_id}/coherence", response_model=CoherenceAccepted, status_code=202)
async def schedule_coherence(item_id: int, db: DB, scheduler: Scheduler):
    if db.get_item(item_id) is None:
        raise HTTPException(status_code=404, detail=f"Item {item_id} not found")
    scheduler.schedule(item_id)
    return CoherenceAccepted(parent_id=item_id)


@router.get("/{item_id}/family", response_model=FamilyResponse)
async def get_family(item_id: int, db: DB):
    family = db.get_family(item_id)
    if family is None:
        raise HTTPException(status_code=404, detail=f"Item {item_id} not found")

    embeddings = family.child_embeddings
    return FamilyResponse(
        parent_id=family.parent.id,
        name=family.parent.name,
        is_abstract=family.parent.is_abstract,
        grandparent_id=db.parent_id_of(item_id),
        children=[ItemRef(id=c.id, name=c.name) for c in family.children],
        avg_similarity=average_pairwise_similarity(embeddings) if len(embeddings) >= 2 else None,
    )
