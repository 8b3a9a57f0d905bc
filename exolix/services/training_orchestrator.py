"""Service layer tying mapping, extraction, embedding and training into one run."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import structlog

from exolix.config import Settings, get_settings
from exolix.errors import TrainingValidationError
from exolix.ml.classifier import EpochMetrics, PreparedTensors, TabularTrainer, TrainedModel, Trainer
from exolix.ml.embedding_client import EmbeddingJobClient, EmbeddingResult
from exolix.ml.extraction import ExtractedDataset, FeatureExtractor
from exolix.ml.label_encoder import LabelEncoder
from exolix.ml.mapping_tools import prepare_mapping_for_training
from exolix.ml.prompt_template import validate_template
from exolix.ml.splitting import StratifiedSplitter
from exolix.schemas.mapping import FeatureMapping
from exolix.schemas.selection import TableSelection, TrainingSelection
from exolix.schemas.training import EpochReport, InputMode, TrainingConfig
from exolix.services.model_persistence import (
    ModelPersistenceChain,
    PersistenceOutcome,
    build_default_chain,
    default_object_key,
)
from exolix.services.stores import MappingStore, SelectionStore

logger = structlog.get_logger(__name__)

INPUT_MODES: tuple[InputMode, ...] = ("raw", "embedding")
# Batch norm cannot train on fewer rows.
MIN_TRAINING_ROWS = 2


class RunStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    TRAINING = "training"
    SAVING = "saving"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class OrchestratorEvent:
    status: RunStatus
    report: EpochReport | None = None
    message: str | None = None


OrchestratorListener = Callable[[OrchestratorEvent], None]


@dataclass
class TrainingContext:
    """Session state read from the stores plus whatever the session derived from it."""

    mapping: FeatureMapping | None = None
    selection: TrainingSelection | None = None
    tables: list[TableSelection] = field(default_factory=list)
    encoder: LabelEncoder | None = None
    dataset: ExtractedDataset | None = None
    embedding: np.ndarray | None = None
    input_mode: InputMode = "raw"

    def dataset_for(self, mode: InputMode) -> ExtractedDataset:
        """Dataset whose inputs match ``mode``; labels are always the extracted ones."""
        if self.dataset is None:
            raise TrainingValidationError("Training data is not loaded.")
        if mode == "embedding":
            if self.embedding is None:
                raise TrainingValidationError("Embedding mode selected but no embedding is available.")
            return self.dataset.with_inputs(self.embedding)
        return self.dataset


@dataclass
class TrainingRunResult:
    model: TrainedModel
    persistence: PersistenceOutcome
    input_mode: InputMode
    train_size: int
    val_size: int
    class_labels: list[str]
    elapsed_seconds: float

    @property
    def persisted(self) -> bool:
        return self.persistence.succeeded


class TrainingOrchestrator:
    """Load, validate, split, train and persist one model per run.

    State lives in an explicit TrainingContext; observers follow progress
    through ``subscribe`` instead of polling.
    """

    def __init__(
        self,
        mapping_store: MappingStore,
        selection_store: SelectionStore,
        *,
        trainer: Trainer | None = None,
        persistence: ModelPersistenceChain | None = None,
        settings: Settings | None = None,
        object_key_factory: Callable[[], str] = default_object_key,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.mapping_store = mapping_store
        self.selection_store = selection_store
        self.settings = settings or get_settings()
        self.trainer: Trainer = trainer or TabularTrainer(stop_signal=self._should_stop)
        self._persistence = persistence
        self.object_key_factory = object_key_factory
        self.clock = clock
        self.context = TrainingContext()
        self.status = RunStatus.IDLE
        self._listeners: list[OrchestratorListener] = []
        self._stop_requested = False

    @property
    def persistence(self) -> ModelPersistenceChain:
        if self._persistence is None:
            self._persistence = build_default_chain(self.settings)
        return self._persistence

    def subscribe(self, listener: OrchestratorListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def load(self) -> TrainingContext:
        """Read mapping and selection, fetch the selected records and extract the dataset."""
        self._set_status(RunStatus.LOADING)
        try:
            mapping = await self.mapping_store.get()
            if mapping is None or not mapping.input_features:
                raise TrainingValidationError("No feature mapping found; define input features first.")
            if not mapping.output_feature.columns:
                raise TrainingValidationError("Feature mapping has no output column.")

            selection = await self.selection_store.get()
            if selection is None or selection.is_empty():
                raise TrainingValidationError("No training selection found; select rows first.")

            tables = selection.sorted_tables()
            table_records = []
            for table in tables:
                table_records.append(await self.selection_store.records_by_ids(table.selected_ids, table.dataset_id))

            encoder = LabelEncoder.from_label_mapping(mapping.label_mapping)
            dataset = FeatureExtractor(mapping, encoder).extract(table_records, tables)
        except Exception as exc:
            self._set_status(RunStatus.FAILED, message=str(exc))
            raise

        self.context = TrainingContext(
            mapping=mapping,
            selection=selection,
            tables=tables,
            encoder=encoder,
            dataset=dataset,
            input_mode=self.context.input_mode,
        )
        logger.info(
            "training_context_loaded",
            tables=[table.tab_name for table in tables],
            sample_count=dataset.sample_count,
            skipped=dataset.skipped_count,
            label_distribution=dataset.label_distribution(),
        )
        self._set_status(RunStatus.READY)
        return self.context

    async def save_mapping(self, mapping: FeatureMapping) -> FeatureMapping:
        """Check a mapping against the saved selection, freeze its label indices and store it."""
        selection = await self.selection_store.get()
        if selection is None or selection.is_empty():
            raise TrainingValidationError("No training selection found; select rows first.")
        prepared = prepare_mapping_for_training(mapping, selection.sorted_tables())
        await self.mapping_store.save(prepared)
        logger.info(
            "feature_mapping_saved",
            input_features=prepared.input_dimension,
            tables=prepared.table_order,
        )
        return prepared

    def set_input_mode(self, mode: InputMode) -> None:
        if mode not in INPUT_MODES:
            raise TrainingValidationError(f"Unknown input mode '{mode}'; expected one of {INPUT_MODES}.")
        self.context.input_mode = mode
        logger.info("input_mode_selected", mode=mode)

    def attach_embedding(self, embedding: EmbeddingResult | np.ndarray) -> None:
        """Keep an embedding matrix as the alternative input for the loaded rows."""
        if isinstance(embedding, EmbeddingResult):
            if embedding.cancelled or embedding.embedding is None:
                raise TrainingValidationError("Embedding job did not produce a matrix.")
            matrix = embedding.embedding
        else:
            matrix = embedding

        matrix = np.asarray(matrix, dtype=np.float32)
        if matrix.ndim != 2:
            raise TrainingValidationError(f"Embedding must be a 2-D matrix, got shape {matrix.shape}.")

        dataset = self.context.dataset
        if dataset is not None and matrix.shape[0] != dataset.sample_count:
            raise TrainingValidationError(
                f"Embedding has {matrix.shape[0]} rows but the dataset has {dataset.sample_count}."
            )
        self.context.embedding = matrix
        logger.info("embedding_attached", rows=int(matrix.shape[0]), dimension=int(matrix.shape[1]))

    def clear_embedding(self) -> None:
        self.context.embedding = None

    async def encode_embedding(self, client: EmbeddingJobClient, prompt: str) -> EmbeddingResult:
        """Send the extracted matrix to the encoder and attach the result unless cancelled.

        Encoder failures propagate; the raw dataset stays usable either way.
        """
        dataset = self.context.dataset
        if dataset is None or dataset.sample_count == 0:
            raise TrainingValidationError("No samples loaded; nothing to embed.")
        validate_template(prompt, dataset.input_dimension)

        result = await client.encode(prompt, dataset.inputs)
        if not result.cancelled:
            self.attach_embedding(result)
        return result

    def check_preconditions(self, mode: InputMode | None = None) -> None:
        mode = mode or self.context.input_mode
        if self.context.mapping is None:
            raise TrainingValidationError("No feature mapping loaded.")
        if self.context.selection is None or self.context.selection.is_empty():
            raise TrainingValidationError("No training selection loaded.")
        dataset = self.context.dataset
        if dataset is None:
            raise TrainingValidationError("Training data is not loaded.")
        if dataset.sample_count == 0:
            raise TrainingValidationError(
                f"No usable rows: all {dataset.total_rows} rows have unmapped labels."
            )
        if mode == "embedding" and self.context.embedding is None:
            raise TrainingValidationError("Embedding mode selected but no embedding is available.")

    def can_start_training(self, mode: InputMode | None = None) -> bool:
        if self.status in (RunStatus.TRAINING, RunStatus.SAVING, RunStatus.LOADING):
            return False
        try:
            self.check_preconditions(mode)
        except TrainingValidationError:
            return False
        return True

    def prepare_tensors(self, config: TrainingConfig) -> PreparedTensors:
        mode = config.input_mode or self.context.input_mode
        self.check_preconditions(mode)
        dataset = self.context.dataset_for(mode)
        encoder = self.context.encoder or LabelEncoder.from_label_mapping(self.context.mapping.label_mapping)

        seed = config.seed if config.seed is not None else self.settings.split_seed
        split = StratifiedSplitter(config.validation_split, seed=seed).split(dataset)
        if split.train_size < MIN_TRAINING_ROWS:
            raise TrainingValidationError(
                f"Training needs at least {MIN_TRAINING_ROWS} training rows after the split; got {split.train_size}."
            )
        return PreparedTensors(
            x_train=split.x_train,
            y_train=encoder.one_hot(split.y_train),
            x_val=split.x_val,
            y_val=encoder.one_hot(split.y_val),
            labels_train=split.y_train,
            labels_val=split.y_val,
            class_labels=encoder.get_all_labels(),
        )

    def request_stop(self) -> None:
        self._stop_requested = True

    def _should_stop(self) -> bool:
        return self._stop_requested

    async def run_training(
        self,
        config: TrainingConfig | None = None,
        on_epoch: Callable[[EpochReport], None] | None = None,
    ) -> TrainingRunResult:
        if self.status in (RunStatus.TRAINING, RunStatus.SAVING):
            raise TrainingValidationError("A training run is already in progress.")

        config = config or TrainingConfig(validation_split=self.settings.default_validation_split)
        mode = config.input_mode or self.context.input_mode
        tensors = self.prepare_tensors(config)
        num_classes = len(tensors.class_labels)

        self._stop_requested = False
        self._set_status(RunStatus.TRAINING)
        started = self.clock()

        def handle_epoch(metrics: EpochMetrics) -> None:
            elapsed = self.clock() - started
            remaining_epochs = max(0, config.epochs - metrics.epoch)
            report = EpochReport(
                epoch=metrics.epoch,
                total_epochs=config.epochs,
                progress=metrics.epoch / config.epochs,
                train_loss=metrics.train_loss,
                train_accuracy=metrics.train_accuracy,
                val_loss=metrics.val_loss,
                val_accuracy=metrics.val_accuracy,
                seconds_remaining=elapsed / metrics.epoch * remaining_epochs if metrics.epoch else None,
            )
            self._emit(OrchestratorEvent(status=RunStatus.TRAINING, report=report))
            if on_epoch:
                on_epoch(report)

        try:
            trained = await self.trainer.fit(
                tensors,
                num_classes=num_classes,
                config=config,
                progress_callback=handle_epoch,
            )
            self._set_status(RunStatus.SAVING)
            outcome = await self.persistence.save_async(trained.to_bytes(), self.object_key_factory())
        except Exception as exc:
            self._set_status(RunStatus.FAILED, message=str(exc))
            raise

        result = TrainingRunResult(
            model=trained,
            persistence=outcome,
            input_mode=mode,
            train_size=int(tensors.labels_train.shape[0]),
            val_size=int(tensors.labels_val.shape[0]),
            class_labels=list(tensors.class_labels),
            elapsed_seconds=self.clock() - started,
        )
        if outcome.succeeded:
            self._set_status(RunStatus.COMPLETED, message=f"Model saved to {outcome.tier} tier.")
        else:
            self._set_status(RunStatus.FAILED, message="Model could not be saved to any storage tier.")
        logger.info(
            "training_run_finished",
            input_mode=mode,
            train_size=result.train_size,
            val_size=result.val_size,
            persisted_tier=outcome.tier,
            elapsed_seconds=round(result.elapsed_seconds, 3),
        )
        return result

    def _set_status(self, status: RunStatus, *, message: str | None = None) -> None:
        previous = self.status
        self.status = status
        logger.debug("orchestrator_status_changed", previous=previous.value, status=status.value)
        self._emit(OrchestratorEvent(status=status, message=message))

    def _emit(self, event: OrchestratorEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning("orchestrator_listener_failed", status=event.status.value, error=str(exc))
