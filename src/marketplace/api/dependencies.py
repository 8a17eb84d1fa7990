from fastapi import Request

from marketplace.application import Marketplace


def get_marketplace(request: Request) -> Marketplace:
    return request.app.state.marketplace
