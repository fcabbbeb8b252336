'''
Request context supplied by the upstream gateway.

Authentication happens before requests reach this service; the gateway
forwards the tenant and the acting user as trusted headers.
'''
from typing import Annotated
from uuid import UUID

from fastapi import Header


async def get_organization_id(
    x_organization_id: Annotated[UUID, Header(description="Tenant the request is scoped to")]
) -> UUID:
    return x_organization_id


async def get_current_user_id(
    x_user_id: Annotated[UUID, Header(description="Staff member performing the request")]
) -> UUID:
    return x_user_id
