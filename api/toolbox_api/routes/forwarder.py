"""
Port Forwarder (/api/v1/forwarding)
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends

from toolbox_api.routes.deps import get_toolbox
from toolbox_api.schemas.common import OkResponse
from toolbox_api.schemas.forwarder import ForwardRule, ForwardRuleInput, ForwardStats
from toolbox_api.toolbox import Toolbox

log = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/forwarding", tags=["forwarding"])


@router.post("/rules", response_model=ForwardRule, name="add_forward_rule")
async def add_forward_rule(data: ForwardRuleInput, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.forwarder.add_rule(data)


@router.get("/rules", response_model=List[ForwardRule], name="get_forward_rules")
async def get_forward_rules(toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.forwarder.list_rules()


@router.get("/rules/{rule_id}", response_model=ForwardRule, name="get_forward_rule")
async def get_forward_rule(rule_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.forwarder.get_rule(rule_id)


@router.put("/rules/{rule_id}", response_model=ForwardRule, name="update_forward_rule")
async def update_forward_rule(rule_id: str, data: ForwardRuleInput, toolbox: Toolbox = Depends(get_toolbox)):
    """Running rules are stopped, updated and started again."""
    return await toolbox.forwarder.update_rule(rule_id, data)


@router.delete("/rules/{rule_id}", response_model=OkResponse, name="remove_forward_rule")
async def remove_forward_rule(rule_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    await toolbox.forwarder.remove_rule(rule_id)
    return OkResponse()


@router.post("/rules/{rule_id}/start", response_model=ForwardRule, name="start_forwarding")
async def start_forwarding(rule_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    rule = await toolbox.forwarder.start(rule_id)
    log.info(f"Forward rule {rule_id} running on :{rule.local_port}")
    return rule


@router.post("/rules/{rule_id}/stop", response_model=ForwardRule, name="stop_forwarding")
async def stop_forwarding(rule_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return await toolbox.forwarder.stop(rule_id)


@router.get("/rules/{rule_id}/stats", response_model=ForwardStats, name="get_forward_stats")
async def get_forward_stats(rule_id: str, toolbox: Toolbox = Depends(get_toolbox)):
    return toolbox.forwarder.get_stats(rule_id)
