"""Username availability router."""

from fastapi import APIRouter

from inventra_engine.descriptors.schemas import UsernameCheck, UsernameCheckRequest

router = APIRouter(prefix="/db")


def _get_checker():
    from inventra_engine.deps import get_username_checker
    return get_username_checker()


@router.post("/check-username", response_model=UsernameCheck)
async def check_username(body: UsernameCheckRequest):
    checker = _get_checker()
    return await checker.check(
        body.username,
        cluster_url=body.cluster_url,
        database=body.database,
        db_type=body.db_type,
        skip_cloud_check=body.skip_cloud_check,
    )
