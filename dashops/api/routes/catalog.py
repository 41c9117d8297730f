from fastapi import APIRouter, Depends

from dashops.api.deps import get_catalog
from dashops.schemas.operations import CatalogResponse
from dashops.services.catalog import CatalogCache

router = APIRouter(prefix="/catalog", tags=["catalog"])


@router.get("/{domain}", response_model=CatalogResponse)
async def list_catalog(domain: str, catalog: CatalogCache = Depends(get_catalog)) -> CatalogResponse:
    items = [item for item in catalog.items(domain) if isinstance(item, dict)]
    return CatalogResponse(domain=domain, items=items)
