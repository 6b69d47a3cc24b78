"""
Maintenance API Endpoints

Manual cleanup runs, ceiling-triggered cleanup and scheduler statistics.
"""
from fastapi import APIRouter, Depends

from filevault.api.dependencies import get_facade
from filevault.schemas.files import CleanupRequest, CleanupRunResponse, CleanupStatsResponse
from filevault.storage.lifecycle import LifecycleFacade

router = APIRouter(prefix="/maintenance", tags=["maintenance"])


@router.post("/cleanup", response_model=CleanupRunResponse)
def run_cleanup(
    request: CleanupRequest,
    facade: LifecycleFacade = Depends(get_facade),
):
    """
    Run the requested cleanup strategies

    Temporary files are swept unless include_temporary is false. Archived,
    deleted, age-based and campaign/user targeted sweeps run when asked for.
    With dry_run nothing is deleted but the report lists the same files.
    """
    return facade.cleanup_files(request.to_options()).to_dict()


@router.post("/cleanup/check", response_model=CleanupRunResponse)
def check_storage_and_cleanup(facade: LifecycleFacade = Depends(get_facade)):
    """Sweep only if storage usage exceeds the configured ceiling"""
    return facade.check_storage_and_cleanup().to_dict()


@router.get("/cleanup/stats", response_model=CleanupStatsResponse)
def get_cleanup_stats(facade: LifecycleFacade = Depends(get_facade)):
    return facade.get_cleanup_stats()
