from fastapi import Request

from processor.local_backend import ZipArchiveBuilder
from service.workflow import Workflow


def get_workflow(request: Request) -> Workflow:
    """lifespan이 app.state에 올려 둔 Workflow를 꺼낸다.

    라우터는 Depends(get_workflow)로 받는다. 테스트는 app.state.workflow를
    가짜 협력자로 만든 Workflow로 바꿔 끼운다.
    """
    return request.app.state.workflow


def get_archives(request: Request) -> ZipArchiveBuilder:
    return request.app.state.archives
