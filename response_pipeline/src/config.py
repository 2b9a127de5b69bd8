# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
Pipeline settings.

Values come from the environment (optionally a .env file) with the
RESPONSE_PIPELINE_ prefix, e.g. RESPONSE_PIPELINE_SHELL_TIMEOUT=60.
"""

import logging

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

ENV_PREFIX = "RESPONSE_PIPELINE_"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Root logging level")
    CREATE_OVERWRITES: bool = Field(
        default=False,
        description="When True, a create action on an existing file overwrites it instead of failing",
    )
    SHELL_TIMEOUT: float = Field(
        default=300.0,
        gt=0,
        description="Seconds a shell action may run before it is terminated",
    )
    AUTO_KEEP_PENDING: bool = Field(
        default=False,
        description="Keep pending diffs automatically when a new batch touches the same path",
    )
    STREAM_ENCODING: str = Field(default="utf-8", description="Encoding of the byte stream")
    HTTP_TIMEOUT: float = Field(default=120.0, gt=0, description="HTTP stream timeout in seconds")


settings = Settings()
