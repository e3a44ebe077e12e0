#!/usr/bin/env python3
"""
Status Feed Processor entry point

Runs the HTTP service (with its built-in scheduler) or a single pipeline step
from the command line:

    python main.py serve                 # HTTP API + scheduler
    python main.py process-feeds         # fetch and ingest all feeds once
    python main.py process-events        # summarize all pending events once
    python main.py summarize-event 42    # summarize one event
    python main.py status                # database and configuration overview
"""

import asyncio
import sys
from datetime import datetime, timezone
from typing import Optional
import argparse

import uvicorn

from config import config, get_logger
from errors import SummarizationError
from fetcher import FeedFetcher, format_feed_report
from models import DatabaseQueue
from summarizer import EventSummarizer, format_summary_report
from telemetry import init_telemetry, get_tracer, trace_span

logger = get_logger("orchestrator")
init_telemetry("status-processor-orchestrator")
_tracer = get_tracer("orchestrator")


class StatusProcessorOrchestrator:
    """Runs individual pipeline steps outside the HTTP service."""

    async def run_fetcher(self) -> bool:
        """Run the feed fetcher step."""
        logger.info("📡 Running feed fetcher")
        try:
            return await self._run_fetcher_impl()
        except Exception as e:
            logger.error(f"❌ Feed fetcher failed: {e}")
            return False

    @trace_span("run_fetcher", tracer_name="orchestrator")
    async def _run_fetcher_impl(self) -> bool:
        fetcher = FeedFetcher()
        await fetcher.initialize()
        try:
            report = await fetcher.process_all_feeds()
        finally:
            await fetcher.close()
        logger.info(f"✅ {format_feed_report(report)}")
        return report['failed'] == 0

    async def run_summarizer(self) -> bool:
        """Run the event summarizer step."""
        logger.info("🧠 Running event summarizer")
        try:
            return await self._run_summarizer_impl()
        except Exception as e:
            logger.error(f"❌ Summarizer failed: {e}")
            return False

    @trace_span("run_summarizer", tracer_name="orchestrator")
    async def _run_summarizer_impl(self) -> bool:
        summarizer = EventSummarizer()
        await summarizer.initialize()
        try:
            report = await summarizer.summarize_all()
        finally:
            await summarizer.close()
        logger.info(f"✅ {format_summary_report(report)}")
        return report['failed'] == 0

    @trace_span("summarize_one", tracer_name="orchestrator", attr_from_args=lambda self, event_id: {"event.id": str(event_id)})
    async def summarize_one(self, event_id: int) -> bool:
        """Summarize a single event by id."""
        summarizer = EventSummarizer()
        await summarizer.initialize()
        try:
            fields = await summarizer.summarize_event_by_id(event_id)
            logger.info(f"✅ Event {event_id}: {fields['status']}/{fields['severity']}")
            return True
        except SummarizationError as e:
            logger.error(f"❌ {e}")
            return False
        finally:
            await summarizer.close()

    async def check_status(self) -> dict:
        """Check the current status of the processor.

        Returns:
            Dictionary with status information
        """
        logger.info("📊 Checking system status")
        status = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'config': config.get_config_summary(),
            'checks': {},
        }

        db: Optional[DatabaseQueue] = None
        try:
            db = DatabaseQueue(config.DATABASE_PATH)
            await db.start()
            counts = await db.execute('count_events')
            events = counts['events']
            summarized = events - counts['unsummarized']
            status['checks']['database'] = {
                'status': 'ok',
                'services': counts['services'],
                'events': events,
                'unsummarized': counts['unsummarized'],
                'summarization_rate': f"{(summarized / events * 100):.1f}%" if events > 0 else "0%",
            }
        except Exception as e:
            status['checks']['database'] = {'status': 'error', 'message': str(e)}
        finally:
            if db:
                await db.stop()

        llm_ready = bool(config.AZURE_ENDPOINT and config.OPENAI_API_KEY and config.DEPLOYMENT_NAME and config.OPENAI_API_VERSION)
        status['checks']['llm'] = {'configured': llm_ready, 'deployment': config.DEPLOYMENT_NAME}

        all_ok = status['checks']['database'].get('status') == 'ok' and llm_ready
        status['overall_status'] = 'healthy' if all_ok else 'issues_detected'
        return status

    def print_status(self, status: dict):
        """Print formatted status information."""
        print("\n📊 Status Feed Processor")
        print(f"⏰ {status['timestamp']}")
        print(f"🏥 Overall: {status['overall_status'].upper()}")

        db = status['checks']['database']
        if db['status'] == 'ok':
            print("\n💾 Database:")
            print(f"   🛰️ Services: {db['services']}")
            print(f"   📰 Events: {db['events']}")
            print(f"   ⏳ Awaiting summary: {db['unsummarized']} (summarized {db['summarization_rate']})")
        else:
            print(f"\n💾 Database: {db['status'].upper()} - {db.get('message', 'Unknown error')}")

        llm = status['checks']['llm']
        print(f"\n🧠 LLM: {'configured (' + str(llm['deployment']) + ')' if llm['configured'] else 'NOT CONFIGURED'}")
        print(f"📡 Configured services: {status['config']['service_count']}")
        print(f"🕐 Scheduler: {'every ' + str(config.SCHEDULER_INTERVAL_SECONDS) + 's' if config.SCHEDULER_ENABLED else 'disabled'}")


def run_server(host: Optional[str] = None, port: Optional[int] = None):
    """Run the HTTP service with uvicorn."""
    from server import create_app

    uvicorn.run(create_app(), host=host or config.HOST, port=port or config.PORT, log_config=None)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Status Feed Processor')
    subparsers = parser.add_subparsers(dest='mode', required=True, help='Operation mode')

    serve = subparsers.add_parser('serve', help='Run the HTTP API and scheduler')
    serve.add_argument('--host', type=str, help='Bind address (default: HOST)')
    serve.add_argument('--port', type=int, help='Listen port (default: PORT)')
    subparsers.add_parser('process-feeds', help='Fetch and ingest all service feeds once')
    subparsers.add_parser('process-events', help='Summarize all pending events once')
    summarize = subparsers.add_parser('summarize-event', help='Summarize one event')
    summarize.add_argument('event_id', type=int, help='Event id')
    subparsers.add_parser('status', help='Show database and configuration status')

    args = parser.parse_args()
    orchestrator = StatusProcessorOrchestrator()

    try:
        if args.mode == 'serve':
            run_server(args.host, args.port)

        elif args.mode == 'process-feeds':
            success = asyncio.run(orchestrator.run_fetcher())
            sys.exit(0 if success else 1)

        elif args.mode == 'process-events':
            success = asyncio.run(orchestrator.run_summarizer())
            sys.exit(0 if success else 1)

        elif args.mode == 'summarize-event':
            success = asyncio.run(orchestrator.summarize_one(args.event_id))
            sys.exit(0 if success else 1)

        elif args.mode == 'status':
            status = asyncio.run(orchestrator.check_status())
            orchestrator.print_status(status)

    except KeyboardInterrupt:
        logger.info("👋 Status processor shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
