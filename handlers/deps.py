"""
Application-scoped objects handed to the routes.
"""
import random
from typing import Optional

from aiogram import Bot
from fastapi import Request

from config import Config
from services.parent_sync import AggregationRule
from services.realtime import ConnectionHub


def get_config(request: Request) -> Config:
    return request.app.state.config


def get_hub(request: Request) -> ConnectionHub:
    return request.app.state.hub


def get_bot(request: Request) -> Optional[Bot]:
    return getattr(request.app.state, "bot", None)


def get_rng(request: Request) -> Optional[random.Random]:
    return getattr(request.app.state, "rng", None)


def get_parent_rule(request: Request) -> AggregationRule:
    return AggregationRule(request.app.state.config.PARENT_STATUS_RULE)
