from fastapi import Header, HTTPException, Query


def get_active_city(
    city_query: str | None = Query(default=None, alias="city"),
    x_city: str | None = Header(default=None, alias="X-City"),
) -> str:
    active = x_city or city_query
    if not active:
        raise HTTPException(
            status_code=400,
            detail="Missing city context. Provide X-City header or city query param.",
        )
    return active


def get_business_id(x_business_id: str | None = Header(default=None, alias="X-Business-Id")) -> str:
    if not x_business_id:
        raise HTTPException(status_code=401, detail="Missing X-Business-Id header")
    return x_business_id


def get_admin_id(x_admin_id: str | None = Header(default=None, alias="X-Admin-Id")) -> str:
    if not x_admin_id:
        raise HTTPException(status_code=401, detail="Missing X-Admin-Id header")
    return x_admin_id
