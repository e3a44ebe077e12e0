#!/usr/bin/env python3
"""
AI-powered event summarizer for status-page incidents.

Turns the raw HTML description of a stored service event into structured
fields (status, translated description, accumulated downtime, severity) with a
single LLM call, validates the reply against a strict schema and writes the
fields back onto the event.
"""

from json import loads, JSONDecodeError
from asyncio import gather
from typing import Annotated, Any, Awaitable, Callable, Dict, List, Literal, Optional
import re
import traceback

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaValidationError

from config import config, get_logger
from errors import (
    ProcessingError,
    NotFoundError,
    ValidationError,
    UpstreamError,
    ParseError,
    SummarizationError,
    describe_error,
)
from llm_client import chat_completion as ai_chat_completion
from models import DatabaseQueue
from telemetry import init_telemetry, get_tracer, trace_span
from utils import RateLimiter, chunked, truncate_string

logger = get_logger("summarizer")
init_telemetry("status-processor-summarizer")
_tracer = get_tracer("summarizer")

CODE_FENCE_PATTERN = re.compile(r'^\s*```(?:json)?\s*(.*?)\s*```\s*$', re.DOTALL | re.IGNORECASE)

EventStatus = Literal["investigating", "ongoing", "resolved", "maintenance"]
EventSeverity = Literal["critical", "major", "minor", "maintenance"]


class EventSummary(BaseModel):
    """Structured fields the LLM must return for one event."""

    model_config = ConfigDict(extra="forbid")

    status: EventStatus
    translated_description: Annotated[str, Field(strict=True, min_length=1)]
    # Required, but may be null
    accumulated_time_minutes: Optional[Annotated[int, Field(strict=True, ge=0)]]
    severity: EventSeverity


def load_prompts() -> Dict[str, str]:
    """Load prompts from prompt.yaml configuration file."""
    try:
        with open(config.PROMPT_CONFIG_PATH, 'r', encoding='utf-8') as f:
            prompts = yaml.safe_load(f)
        return prompts or {}
    except FileNotFoundError:
        logger.error(f"Prompt configuration file not found at {config.PROMPT_CONFIG_PATH}")
        return {}
    except PermissionError:
        logger.error(f"No permission to read prompt configuration file at {config.PROMPT_CONFIG_PATH}")
        return {}
    except yaml.YAMLError as e:
        logger.error(f"Invalid YAML in prompt configuration file: {e}")
        return {}


def parse_summary(text: Optional[str]) -> EventSummary:
    """Parse an LLM reply into an EventSummary.

    A surrounding Markdown code fence is tolerated; anything else that is not
    exactly the expected JSON object raises ParseError.
    """
    if not isinstance(text, str) or not text.strip():
        raise ParseError("LLM returned an empty response")
    match = CODE_FENCE_PATTERN.match(text)
    payload = match.group(1) if match else text.strip()
    try:
        data = loads(payload)
    except JSONDecodeError as e:
        raise ParseError(f"LLM response is not valid JSON: {e}", {"response": truncate_string(payload, 500)}) from e
    if not isinstance(data, dict):
        raise ParseError(f"LLM response is a JSON {type(data).__name__}, expected an object")
    try:
        return EventSummary.model_validate(data)
    except SchemaValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        raise ParseError(f"LLM response does not match the event schema: {problems}") from e


class EventSummarizer:
    """Summarizes stored service events with an LLM."""

    def __init__(self, db: Optional[DatabaseQueue] = None, llm: Optional[Callable[[str], Awaitable[str]]] = None):
        self.db = db
        self._owns_db = False
        self.prompts: Dict[str, str] = load_prompts()
        self.rate_limiter = RateLimiter(config.SUMMARIZER_REQUESTS_PER_MINUTE)
        self.llm = llm or self.call_llm

    async def initialize(self):
        """Open the database connection unless one was injected."""
        if self.db is None:
            self.db = DatabaseQueue(config.DATABASE_PATH)
            await self.db.start()
            self._owns_db = True
        logger.info("EventSummarizer initialized")

    async def close(self):
        if self.db and self._owns_db:
            await self.db.stop()
        logger.info("EventSummarizer closed")

    def build_messages(self, description: str) -> List[Dict[str, str]]:
        """System prompt, the one-shot example exchange, then the event description."""
        system_prompt = self.prompts.get('event_summary', '')
        if not system_prompt:
            raise UpstreamError("No 'event_summary' prompt found in configuration")
        messages = [{"role": "system", "content": system_prompt}]
        example_input = self.prompts.get('example_input')
        example_output = self.prompts.get('example_output')
        if example_input and example_output:
            messages.append({"role": "user", "content": str(example_input)})
            messages.append({"role": "assistant", "content": str(example_output).strip()})
        messages.append({"role": "user", "content": description})
        return messages

    @trace_span(
        "call_llm",
        tracer_name="summarizer",
        attr_from_args=lambda self, description: {
            "azure.openai.deployment": config.DEPLOYMENT_NAME or "",
            "prompt.length": len(description or ""),
        },
    )
    async def call_llm(self, description: str) -> str:
        """Send one event description to Azure OpenAI; exactly one request, no retries."""
        messages = self.build_messages(description)
        await self.rate_limiter.acquire()
        return await ai_chat_completion(
            messages,
            purpose="event_summary",
            retries=0,
            temperature=0,
        )

    @trace_span(
        "summarize_event",
        tracer_name="summarizer",
        attr_from_args=lambda self, event: {"event.id": str((event or {}).get('id'))},
    )
    async def summarize_event(self, event: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Summarize one event and persist the structured fields.

        Returns the fields written. Every failure is raised as a
        SummarizationError carrying the event id and the underlying error.
        """
        event_id = event.get('id') if isinstance(event, dict) else None
        try:
            if not isinstance(event, dict):
                raise NotFoundError("Event not found")
            description = event.get('description')
            if not isinstance(description, str) or not description.strip():
                raise ValidationError(f"Event {event_id} has no description to summarize")

            try:
                raw = await self.llm(description)
            except ProcessingError:
                raise
            except Exception as e:
                raise UpstreamError(f"LLM call failed: {describe_error(e)}") from e

            summary = parse_summary(raw)
            fields = summary.model_dump()
            updated = await self.db.execute('update_event', event_id=event_id, fields=fields)
            if not updated:
                raise NotFoundError(f"Event {event_id} no longer exists")
            logger.info(f"Summarized event {event_id}: {fields['status']}/{fields['severity']}")
            return fields
        except ProcessingError as e:
            if isinstance(e, SummarizationError):
                raise
            raise SummarizationError(event_id, e) from e

    async def summarize_event_by_id(self, event_id: int) -> Dict[str, Any]:
        """Look up an event by id and summarize it."""
        try:
            event = await self.db.execute('get_event', event_id=event_id)
        except ProcessingError as e:
            raise SummarizationError(event_id, e) from e
        if event is None:
            raise SummarizationError(event_id, NotFoundError(f"Event {event_id} not found"))
        return await self.summarize_event(event)

    @trace_span(
        "summarize_all",
        tracer_name="summarizer",
        attr_from_args=lambda self, batch_size=None: {"batch.size": batch_size or config.SUMMARY_BATCH_SIZE},
    )
    async def summarize_all(self, batch_size: Optional[int] = None) -> Dict[str, Any]:
        """Summarize every event still lacking a translated description.

        The candidate set is read once; events are processed in groups of
        `batch_size` and individual failures are collected, not raised.
        """
        size = batch_size if batch_size is not None else config.SUMMARY_BATCH_SIZE
        events = await self.db.execute('list_unsummarized_events')
        report: Dict[str, Any] = {'attempted': len(events), 'succeeded': 0, 'failed': 0, 'failed_ids': [], 'errors': {}}
        logger.info(f"Summarizing {len(events)} pending events in groups of {size}")

        for group in chunked(events, size):
            results = await gather(*(self.summarize_event(event) for event in group), return_exceptions=True)
            for event, result in zip(group, results):
                if isinstance(result, BaseException):
                    report['failed'] += 1
                    report['failed_ids'].append(event['id'])
                    report['errors'][event['id']] = describe_error(result)
                    logger.warning(f"{result}")
                    if not isinstance(result, ProcessingError):
                        logger.debug("".join(traceback.format_exception(type(result), result, result.__traceback__)))
                else:
                    report['succeeded'] += 1

        logger.info(f"Summarized {report['succeeded']}/{report['attempted']} events ({report['failed']} failed)")
        return report


def format_summary_report(report: Dict[str, Any]) -> str:
    """Render a summarize_all report as the text returned by /process-events."""
    text = f"Summarized {report['succeeded']} of {report['attempted']} events"
    if report['failed']:
        text += f"; {report['failed']} failed (ids: {', '.join(str(i) for i in report['failed_ids'])})"
    return text
