"""Process-wide wiring of shards, delegates, notifications and workflows."""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from productivity_agent.config import Config, get_config
from productivity_agent.core.intent import IntentExtractor
from productivity_agent.core.notifications import NotificationHub, Notifier
from productivity_agent.core.responses import ResponseGenerator
from productivity_agent.core.search import SemanticIndexer
from productivity_agent.core.session import AgentSession
from productivity_agent.core.workflows import WorkflowOrchestrator, WorkflowScheduler
from productivity_agent.db.shards import ShardRegistry
from productivity_agent.integrations.ai import AIClient
from productivity_agent.integrations.vector_index import VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: Config
    shards: ShardRegistry
    hub: NotificationHub
    notifier: Notifier
    indexer: SemanticIndexer
    extractor: IntentExtractor
    generator: ResponseGenerator
    orchestrator: WorkflowOrchestrator
    ai: AIClient | None = None
    vector_index: VectorIndex | None = None
    executor: ThreadPoolExecutor | None = None
    scheduler: WorkflowScheduler | None = field(default=None, repr=False)

    def session(self, user_id: str) -> AgentSession:
        return AgentSession(
            self.shards.get(user_id),
            self.extractor,
            self.generator,
            orchestrator=self.orchestrator,
            indexer=self.indexer,
            history_limit=self.config.history_limit,
        )

    def start_scheduler(self) -> WorkflowScheduler:
        if self.scheduler is None:
            self.scheduler = WorkflowScheduler(
                self.orchestrator,
                self.shards,
                interval=self.config.scheduler_interval,
                workflows=self.config.scheduled_workflows,
            )
        self.scheduler.start()
        return self.scheduler

    def close(self):
        if self.scheduler is not None:
            self.scheduler.stop()
        if self.executor is not None:
            self.executor.shutdown(wait=True)
        if self.ai is not None:
            self.ai.close()
        if self.vector_index is not None:
            self.vector_index.close()


def build_runtime(config: Config | None = None, background: bool = True) -> Runtime:
    """Build a runtime from configuration.

    With ``background=False`` indexing and triggered workflows run inline in the
    calling thread, which is what the one-shot CLI commands want.
    """
    config = config or get_config()
    config.data_dir.mkdir(parents=True, exist_ok=True)
    shards = ShardRegistry(config.data_dir)

    ai = None
    if config.ai_base_url:
        ai = AIClient(
            config.ai_base_url,
            api_token=config.ai_api_token,
            embedding_model=config.embedding_model,
            timeout=config.ai_timeout,
        )
    else:
        logger.info("PA_AI_BASE_URL not set; running without a language model")

    vector_index = None
    if config.vector_index_url:
        vector_index = VectorIndex(
            config.vector_index_url, api_token=config.ai_api_token, timeout=config.ai_timeout
        )

    executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="pa-worker") if background else None
    hub = NotificationHub()
    notifier = Notifier(
        shards, hub=hub, slack_token=config.slack_bot_token, slack_channel=config.slack_channel
    )

    return Runtime(
        config=config,
        shards=shards,
        hub=hub,
        notifier=notifier,
        indexer=SemanticIndexer(ai=ai, index=vector_index, executor=executor),
        extractor=IntentExtractor(ai, model=config.chat_model),
        generator=ResponseGenerator(ai, model=config.chat_model),
        orchestrator=WorkflowOrchestrator(
            shards, delegate=ai, model=config.chat_model, notifier=notifier, executor=executor
        ),
        ai=ai,
        vector_index=vector_index,
        executor=executor,
    )
