"""Document tools: the model asks for a document, the content streams next to the chat."""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from typing import Any

from pydantic_ai.messages import (
    ModelRequest,
    PartDeltaEvent,
    PartStartEvent,
    SystemPromptPart,
    TextPart,
    TextPartDelta,
    UserPromptPart,
)
from pydantic_ai.models import Model, ModelRequestParameters
from sqlalchemy import select

from toolweave.config import Config
from toolweave.dbutils import open_db_session
from toolweave.log import logger
from toolweave.orm import Document, DocumentKind
from toolweave.protocol import data_event
from toolweave.tools.base import FunctionTool, ToolArgs, ToolContext

DOCUMENT_KINDS = [kind.value for kind in DocumentKind]

TEXT_DOCUMENT_PROMPT = """You are an expert writer with strong Markdown formatting skills.
Write only from the provided context and requirements. Do not invent facts.
Use headings, lists and tables where they make the document clearer."""

CODE_DOCUMENT_PROMPT = """You are a Python code generator that creates self-contained, executable snippets.
Each snippet must run on its own, print its results, use only the standard library,
and avoid input(), file or network access and infinite loops. Reply with code only."""

SHEET_DOCUMENT_PROMPT = """You are a spreadsheet assistant. Reply with CSV data only:
a header row followed by rows of meaningful values."""

PROMPTS = {
    DocumentKind.TEXT: TEXT_DOCUMENT_PROMPT,
    DocumentKind.CODE: CODE_DOCUMENT_PROMPT,
    DocumentKind.SHEET: SHEET_DOCUMENT_PROMPT,
}

# Name of the data event carrying the streamed content, per kind
DELTA_EVENTS = {
    DocumentKind.TEXT: "textDelta",
    DocumentKind.CODE: "codeDelta",
    DocumentKind.SHEET: "sheetDelta",
}


def update_document_prompt(content: str | None, kind: DocumentKind) -> str:
    return (
        f"Improve the following {kind.value} document based on the given prompt. "
        f"Return the complete new content.\n\n{content or ''}"
    )


CREATE_DOCUMENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "description": "The title of the document"},
        "kind": {"type": "string", "enum": DOCUMENT_KINDS, "description": "The type of document to create"},
        "context": {
            "type": "string",
            "description": "Background knowledge or research findings that should inform the content",
        },
        "requirements": {
            "type": "string",
            "description": "Specific requirements, constraints or focus areas for the document",
        },
    },
    "required": ["title", "kind"],
}

UPDATE_DOCUMENT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "id": {"type": "string", "description": "The ID of the document to update"},
        "description": {"type": "string", "description": "The changes that need to be made"},
        "context": {"type": "string", "description": "Additional information to help with the update"},
    },
    "required": ["id", "description"],
}


class DocumentTools:
    """Request scoped ``create_document`` and ``update_document`` tools.

    Content is generated by ``model`` and streamed through the request's writer
    as transient data events, so it reaches the client while the tool call is
    still running. Every save stores a new version.
    """

    def __init__(self, model: Model, config: Config) -> None:
        self.model = model
        self.config = config

    def tools(self) -> list[FunctionTool]:
        return [
            FunctionTool(
                name="create_document",
                fn=self.create_document,
                description="Create a document for writing or content creation activities. "
                "The content is generated from the title, the kind and the optional context.",
                input_schema=CREATE_DOCUMENT_SCHEMA,
            ),
            FunctionTool(
                name="update_document",
                fn=self.update_document,
                description="Update an existing document with the given description of changes.",
                input_schema=UPDATE_DOCUMENT_SCHEMA,
            ),
        ]

    async def create_document(self, args: ToolArgs, ctx: ToolContext) -> dict[str, Any]:
        title = args["title"]
        kind = DocumentKind(args["kind"])
        document_id = uuid.uuid4().hex

        self._write(ctx, "kind", kind.value)
        self._write(ctx, "id", document_id)
        self._write(ctx, "title", title)
        self._write(ctx, "clear", None)

        system_prompt = PROMPTS[kind]
        if context := args.get("context"):
            system_prompt += f"\n\nCONTEXT PROVIDED:\n{context}"
        if requirements := args.get("requirements"):
            system_prompt += f"\n\nREQUIREMENTS:\n{requirements}"

        content = await self._generate(ctx, kind, system_prompt, title)
        await self._save(document_id, title, kind, content, ctx.user_id)
        self._write(ctx, "finish", None)

        return {
            "id": document_id,
            "title": title,
            "kind": kind.value,
            "content": "A document was created and is now visible to the user.",
        }

    async def update_document(self, args: ToolArgs, ctx: ToolContext) -> dict[str, Any]:
        document = await self.get_document(args["id"])
        if document is None:
            return {"error": "Document not found"}

        self._write(ctx, "clear", None)
        kind = DocumentKind(document.kind)
        system_prompt = update_document_prompt(document.content, kind)
        if context := args.get("context"):
            system_prompt += f"\n\nAdditional Context:\n{context}"

        content = await self._generate(ctx, kind, system_prompt, args["description"])
        await self._save(document.document_id, document.title, kind, content, ctx.user_id)
        self._write(ctx, "finish", None)

        return {
            "id": document.document_id,
            "title": document.title,
            "kind": kind.value,
            "content": "The document has been updated successfully.",
        }

    async def get_document(self, document_id: str) -> Document | None:
        async with open_db_session(self.config) as session:
            result = await session.execute(
                select(Document)
                .where(Document.document_id == document_id)
                .order_by(Document.created_at.desc(), Document.id.desc())
                .limit(1)
            )
            return result.scalars().one_or_none()

    async def _save(
        self, document_id: str, title: str, kind: DocumentKind, content: str, user_id: str | None
    ) -> None:
        async with open_db_session(self.config) as session:
            session.add(
                Document(document_id=document_id, title=title, kind=kind, content=content, user_id=user_id or "")
            )
            await session.commit()
        logger.info(f"Saved {kind.value} document {document_id}")

    async def _generate(self, ctx: ToolContext, kind: DocumentKind, system_prompt: str, prompt: str) -> str:
        content = ""
        async for delta in self._stream_text(system_prompt, prompt):
            content += delta
            # Code is re-sent whole so the client can replace its buffer
            self._write(ctx, DELTA_EVENTS[kind], content if kind == DocumentKind.CODE else delta)
        return content

    async def _stream_text(self, system_prompt: str, prompt: str) -> AsyncIterator[str]:
        messages = [ModelRequest(parts=[SystemPromptPart(content=system_prompt), UserPromptPart(content=prompt)])]
        async with self.model.request_stream(messages, None, ModelRequestParameters()) as response:
            async for event in response:
                if isinstance(event, PartStartEvent) and isinstance(event.part, TextPart) and event.part.content:
                    yield event.part.content
                elif isinstance(event, PartDeltaEvent) and isinstance(event.delta, TextPartDelta):
                    if event.delta.content_delta:
                        yield event.delta.content_delta

    @staticmethod
    def _write(ctx: ToolContext, name: str, data: Any) -> None:
        if ctx.writer is not None:
            ctx.writer.write(data_event(name, data, transient=True))
