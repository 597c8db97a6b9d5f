from fastapi import Query, Request

from app.services.ledger_service import Page, validate_page


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def get_page(page: int = Query(1), page_size: int = Query(20)) -> Page:
    return validate_page(page, page_size)
