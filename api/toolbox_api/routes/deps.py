from fastapi import Request

from toolbox_api.toolbox import Toolbox


def get_toolbox(request: Request) -> Toolbox:
    return request.app.state.toolbox
