"""Explicit wiring of the pipeline's collaborators.

Stage services, receivers and the monitor receive their dependencies through
constructors. ``build_container`` assembles the production graph from
config; tests pass fakes for any provider through the keyword overrides.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .aggregator import SubmissionStatusAggregator
from .dispatcher import Dispatcher
from .models import PipelineConfig
from .monitor import TimeoutMonitor
from .providers.base import AvatarRenderer, Captioner, SpeechSynthesizer, Storage, TextGenerator, Transcriber
from .providers.http import (
    ElevenLabsSynthesizer,
    HeyGenRenderer,
    OpenAITextGenerator,
    OpenAITranscriber,
    SubmagicCaptioner,
)
from .providers.storage import LocalStorage
from .queue import JobWorkerPool, QueueBackend, SQLiteQueue
from .scheduler import JobScheduler
from .services import (
    AudioService,
    AutoTagger,
    FfmpegAudioJoiner,
    InteractivePodcastService,
    PodcastService,
    PostProcessingService,
    QuestionGenerator,
    QuizService,
    StageService,
    VideoService,
)
from .services.postprocess import runner_factory
from .state import MediaKind
from .store import OutputStore
from .submissions import SubmissionService
from .webhooks import CaptionWebhookHandler, RenderWebhookHandler, VideoWebhookReceiver

logger = logging.getLogger(__name__)


@dataclass
class Container:
    config: PipelineConfig
    store: OutputStore
    storage: Storage
    queue_factory: Callable[[], QueueBackend]
    scheduler: JobScheduler
    aggregator: SubmissionStatusAggregator
    services: Dict[MediaKind, StageService]
    receiver: VideoWebhookReceiver
    dispatcher: Dispatcher
    monitor: TimeoutMonitor
    render_webhooks: RenderWebhookHandler = field(init=False)
    caption_webhooks: CaptionWebhookHandler = field(init=False)
    submissions: SubmissionService = field(init=False)

    def __post_init__(self):
        self.submissions = SubmissionService(self.store, self.scheduler, self.services, self.aggregator)
        self.render_webhooks = RenderWebhookHandler(self.receiver)
        self.caption_webhooks = CaptionWebhookHandler(self.receiver)

    def service(self, kind: MediaKind) -> StageService:
        return self.services[MediaKind(kind)]

    def worker_pool(self) -> JobWorkerPool:
        return JobWorkerPool(
            self.queue_factory,
            self.dispatcher,
            concurrency=self.config.worker.concurrency,
            poll_interval_s=self.config.worker.poll_interval_s,
            heartbeat_interval_s=self.config.worker.heartbeat_interval_s,
        )


def _require_key(name: str, key: Optional[str]) -> str:
    if not key:
        logger.warning("No API key configured for %s; calls will be rejected", name)
    return key or ""


def build_container(
    config: PipelineConfig,
    *,
    store: Optional[OutputStore] = None,
    storage: Optional[Storage] = None,
    queue_factory: Optional[Callable[[], QueueBackend]] = None,
    text: Optional[TextGenerator] = None,
    speech: Optional[SpeechSynthesizer] = None,
    renderer: Optional[AvatarRenderer] = None,
    captioner: Optional[Captioner] = None,
    transcriber: Optional[Transcriber] = None,
    joiner=None,
    post_processor: Optional[PostProcessingService] = None,
) -> Container:
    """Assemble the object graph. Any keyword left as None is built from ``config``."""
    providers = config.providers
    timeout = providers.request_timeout_s

    store = store or OutputStore.from_url(config.database.url, echo=config.database.echo)
    storage = storage or LocalStorage(
        config.storage.root, config.storage.public_base_url, timeout_s=max(timeout, 300.0)
    )
    queue_factory = queue_factory or (lambda: SQLiteQueue(config.queue.db_path))

    text = text or OpenAITextGenerator(
        providers.text_base_url, _require_key("text generation", providers.text_api_key),
        providers.text_model, timeout_s=timeout,
    )
    transcriber = transcriber or OpenAITranscriber(
        providers.text_base_url, _require_key("transcription", providers.text_api_key),
        providers.transcription_model,
    )
    speech = speech or ElevenLabsSynthesizer(
        providers.speech_base_url, _require_key("speech synthesis", providers.speech_api_key),
        providers.speech_model,
    )
    renderer = renderer or HeyGenRenderer(
        providers.render_base_url, _require_key("avatar render", providers.render_api_key), timeout_s=timeout,
    )
    if captioner is None and providers.caption_api_key:
        captioner = SubmagicCaptioner(
            providers.caption_base_url, providers.caption_api_key, providers.caption_webhook_url,
            timeout_s=timeout,
        )

    make_runner = runner_factory(config.post_processing)
    joiner = joiner or FfmpegAudioJoiner(make_runner, work_dir=config.post_processing.work_dir)
    post_processor = post_processor or PostProcessingService(
        storage, config.post_processing, make_runner,
        width=config.video.width, height=config.video.height,
    )

    scheduler = JobScheduler(queue_factory, config.queue)
    aggregator = SubmissionStatusAggregator(store)
    tagger = AutoTagger(store, text)
    questions = QuestionGenerator(text, count=config.video.question_count)
    default_voice = providers.default_voice_id

    services: Dict[MediaKind, StageService] = {
        MediaKind.AUDIO: AudioService(store, text, speech, storage, default_voice, tagger=tagger),
        MediaKind.VIDEO: VideoService(
            store, text, speech, renderer, storage, config.video, default_voice, tagger=tagger
        ),
        MediaKind.PODCAST: PodcastService(
            store, text, speech, storage, joiner,
            host_voice_id=default_voice, guest_voice_id=providers.default_guest_voice_id, tagger=tagger,
        ),
        MediaKind.QUIZ: QuizService(store, text, tagger=tagger),
        MediaKind.INTERACTIVE_PODCAST: InteractivePodcastService(
            store, text, speech, storage, transcriber,
            question_count=config.video.question_count, default_voice_id=default_voice, tagger=tagger,
        ),
    }

    receiver = VideoWebhookReceiver(
        store, storage, transcriber, questions, aggregator, scheduler,
        post_processor=post_processor, captioner=captioner, tagger=tagger, config=config.video,
    )
    dispatcher = Dispatcher(services, receiver, aggregator)
    monitor = TimeoutMonitor(store, aggregator, threshold_s=config.monitor.threshold_s)

    return Container(
        config=config,
        store=store,
        storage=storage,
        queue_factory=queue_factory,
        scheduler=scheduler,
        aggregator=aggregator,
        services=services,
        receiver=receiver,
        dispatcher=dispatcher,
        monitor=monitor,
    )
