"""
Category reconciliation endpoints: analysis, mapping decisions and history.
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from content_import.api.dependencies import get_matcher
from content_import.api.schemas.shared import (
    AnalyzeCategoriesRequest,
    ApplyMappingRequest,
    CategoryAnalysisResponse,
    CreateCategoryRequest,
    MappingHistoryRecord,
    MappingHistoryResponse,
    MappingStatistics,
    MergeCategoriesRequest,
)
from content_import.domain.categories.matcher import CategoryMatcher
from content_import.domain.imports.exceptions import CategoryNotFoundError

router = APIRouter(tags=["categories"])

logger = logging.getLogger(__name__)


@router.post("/categories/analyze", response_model=CategoryAnalysisResponse)
async def analyze_categories_endpoint(
    request: AnalyzeCategoriesRequest,
    matcher: CategoryMatcher = Depends(get_matcher),
):
    analyses = matcher.analyze(request.document, request.user_id)
    return CategoryAnalysisResponse(
        success=True,
        analyses=analyses,
        mappings=CategoryMatcher.to_category_mappings(analyses),
    )


@router.post("/categories/mappings", response_model=MappingHistoryRecord)
async def apply_mapping_endpoint(
    request: ApplyMappingRequest,
    matcher: CategoryMatcher = Depends(get_matcher),
):
    try:
        return matcher.apply_mapping(
            request.original_name,
            request.target_category_id,
            request.user_id,
            import_session_id=request.import_session_id,
            manual_override=request.manual_override,
        )
    except CategoryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post("/categories/mappings/merge", response_model=List[MappingHistoryRecord])
async def merge_categories_endpoint(
    request: MergeCategoriesRequest,
    matcher: CategoryMatcher = Depends(get_matcher),
):
    try:
        return matcher.record_merge(
            request.original_names,
            request.target_category_id,
            request.user_id,
            import_session_id=request.import_session_id,
        )
    except CategoryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc))


@router.post("/categories", response_model=MappingHistoryRecord, status_code=201)
async def create_category_endpoint(
    request: CreateCategoryRequest,
    matcher: CategoryMatcher = Depends(get_matcher),
):
    if not request.name.strip():
        raise HTTPException(status_code=400, detail="Category name must not be empty")
    return matcher.create_new_category(
        request.name.strip(),
        request.user_id,
        level=request.level,
        import_session_id=request.import_session_id,
    )


@router.get("/categories/mappings/history/{user_id}", response_model=MappingHistoryResponse)
async def mapping_history_endpoint(
    user_id: str,
    limit: int = 50,
    matcher: CategoryMatcher = Depends(get_matcher),
):
    return MappingHistoryResponse(success=True, records=matcher.get_user_mapping_history(user_id, limit))


@router.get("/categories/mappings/statistics", response_model=MappingStatistics)
async def mapping_statistics_endpoint(matcher: CategoryMatcher = Depends(get_matcher)):
    return matcher.get_mapping_statistics()
