"""
Tag & Schema Router

  GET    /tags                 all tags, by name
  POST   /tags                 create (409 on a case-insensitive duplicate)
  PATCH  /tags/{id}            rename / recolour
  DELETE /tags/{id}            delete (links go with it)

  GET    /schemas              extraction schemas, by document_type
  POST   /schemas              create (409 on duplicate document_type)
  PATCH  /schemas/{id}         update name / description / field schema
  DELETE /schemas/{id}         delete (documents keep their type, schema_id → null)
"""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Response, status

from dms.api.deps import Catalog
from dms.schemas.documents import (
    ErrorResponse,
    SchemaCreateRequest,
    SchemaRead,
    SchemaUpdateRequest,
    TagCreateRequest,
    TagRead,
    TagUpdateRequest,
)

router = APIRouter(tags=["Catalog"])

_NOT_FOUND = {404: {"model": ErrorResponse}}
_CONFLICT = {409: {"model": ErrorResponse}}


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

@router.get("/tags", response_model=list[TagRead])
async def list_tags(catalog: Catalog) -> list[TagRead]:
    return await catalog.list_tags()


@router.post(
    "/tags",
    response_model=TagRead,
    status_code=status.HTTP_201_CREATED,
    responses=_CONFLICT,
)
async def create_tag(body: TagCreateRequest, catalog: Catalog) -> TagRead:
    return await catalog.create_tag(body.name, body.color)


@router.patch("/tags/{tag_id}", response_model=TagRead, responses={**_NOT_FOUND, **_CONFLICT})
async def update_tag(tag_id: UUID, body: TagUpdateRequest, catalog: Catalog) -> TagRead:
    return await catalog.update_tag(tag_id, name=body.name, color=body.color)


@router.delete("/tags/{tag_id}", status_code=status.HTTP_204_NO_CONTENT, responses=_NOT_FOUND)
async def delete_tag(tag_id: UUID, catalog: Catalog) -> Response:
    await catalog.delete_tag(tag_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

@router.get("/schemas", response_model=list[SchemaRead])
async def list_schemas(catalog: Catalog) -> list[SchemaRead]:
    return await catalog.list_schemas()


@router.post(
    "/schemas",
    response_model=SchemaRead,
    status_code=status.HTTP_201_CREATED,
    responses=_CONFLICT,
)
async def create_schema(body: SchemaCreateRequest, catalog: Catalog) -> SchemaRead:
    return await catalog.create_schema(
        document_type=body.document_type,
        name=body.name,
        description=body.description,
        schema=body.schema_,
    )


@router.patch("/schemas/{schema_id}", response_model=SchemaRead, responses=_NOT_FOUND)
async def update_schema(schema_id: UUID, body: SchemaUpdateRequest, catalog: Catalog) -> SchemaRead:
    return await catalog.update_schema(
        schema_id,
        name=body.name,
        description=body.description,
        schema=body.schema_,
    )


@router.delete("/schemas/{schema_id}", status_code=status.HTTP_204_NO_CONTENT, responses=_NOT_FOUND)
async def delete_schema(schema_id: UUID, catalog: Catalog) -> Response:
    await catalog.delete_schema(schema_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
