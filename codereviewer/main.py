"""
FastAPI 服务入口。

这里做三件事：
- 加载配置（严格校验环境变量）
- 组装外部依赖（HTTP Client / 推理执行器 / 模型列表 / 模板库）
- 装配路由（health + models + templates + test-connection + review）

注意：
- 业务流程不写在这里（由 `review/orchestrator.py` 负责）
- `httpx.AsyncClient` 会被复用（避免每个请求新建连接），超时按请求传入

启动：
  uvicorn codereviewer.main:build_app --factory
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from codereviewer.config import AppConfig, load_config_from_env
from codereviewer.llm.client import InferenceClient
from codereviewer.llm.discovery import ModelDiscovery
from codereviewer.llm.errors import ConfigurationException
from codereviewer.review.models import CodeChange
from codereviewer.review.orchestrator import build_review_orchestrator, run_review
from codereviewer.review.prompt import validate_template
from codereviewer.review.report import save_review_report
from codereviewer.review.templates import TemplateStore

logger = logging.getLogger(__name__)

CUSTOM_TEMPLATE_NAME = "自定义模板"


class ReviewRequest(BaseModel):
    """POST /api/review 请求体（camelCase）。"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    code_changes: list[CodeChange] = Field(default_factory=list)
    template: str | None = None
    custom_prompt: str | None = None
    save_report: bool = False


def configure_logging(environ: Mapping[str, str]) -> None:
    level_name = environ.get("LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def build_app(
    config: AppConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
    base_dir: Path | None = None,
) -> FastAPI:
    """创建并返回 FastAPI app（便于测试/复用；测试里注入 config 与 mock http_client）。"""

    # 1) 配置：缺失会直接抛错，启动失败（这是期望行为）
    if config is None:
        configure_logging(os.environ)
        config = load_config_from_env(os.environ)

    # 2) 可复用的 HTTP client：推理请求与模型列表共用
    owns_http_client = http_client is None
    shared_http = http_client or httpx.AsyncClient(timeout=httpx.Timeout(30.0))

    discovery = ModelDiscovery(http_client=shared_http)
    inference_client = InferenceClient(
        http_client=shared_http,
        discovery=discovery,
        failover_enabled=config.failover_enabled,
    )
    orchestrator = build_review_orchestrator(inference_client=inference_client, language=config.language)
    templates = TemplateStore(templates_dir=config.templates_dir)
    report_base_dir = base_dir or Path.cwd()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            f"Code reviewer started: provider={config.model.provider.value} model={config.model.model_name} "
            f"endpoint={config.model.endpoint}"
        )
        yield
        if owns_http_client:
            await shared_http.aclose()
        logger.info("Code reviewer shutdown complete")

    app = FastAPI(title="AI Code Reviewer", version="0.1.0", lifespan=lifespan)

    @app.get("/health")
    async def health() -> dict[str, str]:
        """健康检查：用于 k8s / LB 探活。"""
        return {"status": "ok"}

    @app.get("/api/models")
    async def list_models() -> dict[str, list[str]]:
        return {"models": await discovery.list_models(config.model)}

    @app.get("/api/templates")
    async def list_templates() -> dict[str, list[dict[str, Any]]]:
        return {
            "templates": [
                {"name": t.name, "description": t.description, "isDefault": t.is_default}
                for t in templates.list_templates()
            ]
        }

    @app.get("/api/test-connection")
    async def test_connection() -> dict[str, Any]:
        success = await inference_client.test_connection(config.model)
        message = "Connection OK" if success else f"Cannot reach {config.model.full_url()}"
        return {"success": success, "message": message}

    @app.post("/api/review")
    async def review(req: ReviewRequest) -> dict[str, Any]:
        if req.custom_prompt:
            try:
                validate_template(req.custom_prompt)
            except ConfigurationException as exc:
                raise HTTPException(status_code=400, detail=exc.message) from exc
            template_name, template_text = CUSTOM_TEMPLATE_NAME, req.custom_prompt
        else:
            selected = templates.get(req.template)
            template_name, template_text = selected.name, selected.template

        result = await run_review(
            orchestrator=orchestrator,
            code_changes=req.code_changes,
            template_text=template_text,
            template_name=template_name,
            config=config.model,
        )

        body: dict[str, Any] = result.model_dump(mode="json", by_alias=True)
        if req.save_report:
            path = save_review_report(result=result, output_dir=config.result_dir, base_dir=report_base_dir)
            body["reportPath"] = str(path)
        return body

    return app


def main() -> None:
    uvicorn.run(build_app(), host=os.environ.get("HOST", "127.0.0.1"), port=int(os.environ.get("PORT", "8000")))


if __name__ == "__main__":
    main()
