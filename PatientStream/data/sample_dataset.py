"""The sample store: validated, processor-encoded task samples, persistable with per-tensor artifacts."""

from __future__ import annotations

import copy
import os
from collections import defaultdict
from pathlib import Path
from typing import Any

import torch
from loguru import logger
from mixins import SaveableMixin, TQDMableMixin

from ..processors import FeatureProcessor, get_processor

SAMPLE_DATASET_MANIFEST_FN = "sd_object.pkl"
TENSORS_DIR = "tensors"
PLACEHOLDER_KEY = "is_tensor_placeholder"

# The sample keys identifying a record (visit); the first one present wins.
RECORD_ID_KEYS = ("record_id", "visit_id", "admission_id")

SCHEMA_T = dict[str, str | FeatureProcessor | type[FeatureProcessor]]


def is_tensor_placeholder(value: Any) -> bool:
    """Returns whether `value` stands in for a tensor persisted to its own file.

    Examples:
        >>> is_tensor_placeholder({"is_tensor_placeholder": True, "path": "tensors/sample_0_x.pt"})
        True
        >>> is_tensor_placeholder({"is_tensor_placeholder": "yes"})
        False
        >>> is_tensor_placeholder(torch.tensor([1.0]))
        False
    """
    return isinstance(value, dict) and value.get(PLACEHOLDER_KEY) is True


def resolve_placeholder(value: Any, base_dir: Path | None) -> Any:
    """Loads the tensor a placeholder points to (relative to `base_dir`); other values are returned as is."""
    if not is_tensor_placeholder(value):
        return value
    fp = Path(value["path"])
    if base_dir is not None and not fp.is_absolute():
        fp = base_dir / fp
    return torch.load(fp)


def _build_processor(entry: str | FeatureProcessor | type[FeatureProcessor]) -> FeatureProcessor:
    match entry:
        case str():
            return get_processor(entry)()
        case FeatureProcessor():
            return entry
        case type() if issubclass(entry, FeatureProcessor):
            return entry()
        case _:
            raise TypeError(f"Schema entries must be processor type names or processors. Got {entry!r}")


class SampleDataset(SaveableMixin, TQDMableMixin, torch.utils.data.Dataset):
    """A collection of task samples whose schema fields are encoded by fit processors.

    On construction, samples are validated against the input and output schemas, one processor per schema
    field is fit over all samples and every sample's schema fields are replaced by their encoded values. If
    `save_path` is given, the store is also persisted there: each encoded tensor is written to its own file in
    ``tensors/`` and replaced, in the persisted copy only, by a ``{"is_tensor_placeholder": True, "path": ...}``
    placeholder. `load_sample_dataset` reverses this.

    Args:
        samples: The raw samples. Each must hold ``patient_id`` and every field named in either schema.
        input_schema: Maps input field names to processor type names (see `PatientStream.processors`).
        output_schema: Maps output field names to processor type names.
        dataset_name: The name of the source dataset.
        task_name: The name of the task that produced the samples.
        save_path: If given, the directory the store is persisted to.

    Raises:
        ValueError: If a sample is missing a required field.
        KeyError: If a schema names an unknown processor type.

    Examples:
        >>> samples = [
        ...     {"patient_id": "1", "visit_id": "a", "codes": ["x", "y"], "label": 1},
        ...     {"patient_id": "1", "visit_id": "b", "codes": ["y"], "label": 0},
        ...     {"patient_id": "2", "visit_id": "c", "codes": ["z"], "label": 1},
        ... ]
        >>> sd = SampleDataset(samples, {"codes": "sequence"}, {"label": "binary"})
        >>> len(sd)
        3
        >>> sd[0]
        {'codes': tensor([2, 3]), 'label': tensor([1.])}
        >>> sd.patient_to_index
        {'1': [0, 1], '2': [2]}
        >>> sd.record_to_index
        {'a': [0], 'b': [1], 'c': [2]}
        >>> SampleDataset([{"patient_id": "1", "codes": ["x"]}], {"codes": "sequence"}, {"label": "binary"})
        Traceback (most recent call last):
            ...
        ValueError: Sample 0 is missing required field(s) label
    """

    _PICKLER: str = "dill"
    """Dictates via which pickler the `_save` and `_load` methods will save/load objects of this class, as
    defined in `SaveableMixin`."""

    def __init__(
        self,
        samples: list[dict[str, Any]],
        input_schema: SCHEMA_T,
        output_schema: SCHEMA_T,
        dataset_name: str = "",
        task_name: str = "",
        save_path: Path | str | None = None,
        **kwargs,
    ):
        super().__init__(**kwargs)

        self.samples = [dict(s) for s in samples]
        self.input_schema = dict(input_schema)
        self.output_schema = dict(output_schema)
        self.dataset_name = dataset_name
        self.task_name = task_name

        self.validate()
        self.patient_to_index, self.record_to_index = self._build_indices()

        self.input_processors: dict[str, FeatureProcessor] = {}
        self.output_processors: dict[str, FeatureProcessor] = {}
        self.data_dir = None

        self.build_and_process(save_path=save_path)

    @property
    def schema_keys(self) -> list[str]:
        return list(dict.fromkeys([*self.input_schema, *self.output_schema]))

    def validate(self):
        """Checks that every sample holds ``patient_id`` and every schema field.

        Raises:
            ValueError: Naming the first offending sample and its missing field(s).
        """
        required = ["patient_id", *self.schema_keys]
        for i, sample in enumerate(self.samples):
            missing = [k for k in required if k not in sample]
            if missing:
                raise ValueError(f"Sample {i} is missing required field(s) {', '.join(missing)}")

    def _build_indices(self) -> tuple[dict[str, list[int]], dict[str, list[int]]]:
        patient_to_index = defaultdict(list)
        record_to_index = defaultdict(list)
        for i, sample in enumerate(self.samples):
            patient_to_index[str(sample["patient_id"])].append(i)

            record_id = next((sample[k] for k in RECORD_ID_KEYS if sample.get(k) is not None), None)
            if record_id is not None:
                record_to_index[str(record_id)].append(i)
        return dict(patient_to_index), dict(record_to_index)

    def _fit_processors(self, schema: SCHEMA_T) -> dict[str, FeatureProcessor]:
        processors = {}
        for field, entry in self._tqdm(list(schema.items())):
            processors[field] = _build_processor(entry).fit(self.samples, field)
        return processors

    @staticmethod
    def _spill_tensors(i: int, sample: dict[str, Any], save_dir: Path) -> dict[str, Any]:
        """Writes each tensor of `sample` to its own file and returns a copy holding placeholders instead."""
        to_save = dict(sample)
        for k, v in sample.items():
            if isinstance(v, torch.Tensor):
                rel_fp = Path(TENSORS_DIR) / f"sample_{i}_{k}.pt"
                torch.save(v, save_dir / rel_fp)
                to_save[k] = {PLACEHOLDER_KEY: True, "path": str(rel_fp)}
        return to_save

    def _write_manifest(self, save_dir: Path, samples_for_saving: list[dict[str, Any]]):
        manifest = copy.copy(self)
        manifest.samples = samples_for_saving
        manifest.data_dir = None

        # The manifest marks a completed store, so it is only renamed into place once fully written.
        manifest_fp = save_dir / SAMPLE_DATASET_MANIFEST_FN
        tmp_fp = save_dir / f".{SAMPLE_DATASET_MANIFEST_FN}.tmp"
        try:
            manifest._save(tmp_fp, do_overwrite=True)
            os.replace(tmp_fp, manifest_fp)
        finally:
            tmp_fp.unlink(missing_ok=True)
        logger.info(f"SampleDataset saved to {save_dir}")

    @staticmethod
    def _prepare_save_dir(save_path: Path | str) -> Path:
        save_dir = Path(save_path)
        (save_dir / TENSORS_DIR).mkdir(parents=True, exist_ok=True)
        return save_dir

    def build_and_process(self, save_path: Path | str | None = None):
        """Fits the schema processors over all samples, then encodes every sample (persisting if requested)."""
        logger.info("Building input processors...")
        self.input_processors = self._fit_processors(self.input_schema)
        logger.info("Building output processors...")
        self.output_processors = self._fit_processors(self.output_schema)

        processors = {**self.output_processors, **self.input_processors}

        save_dir = None if save_path is None else self._prepare_save_dir(save_path)
        samples_for_saving = []

        logger.info(f"Processing {len(self.samples)} samples...")
        for i, sample in enumerate(self._tqdm(self.samples)):
            for k, processor in processors.items():
                sample[k] = processor.process(sample[k])
            if save_dir is not None:
                samples_for_saving.append(self._spill_tensors(i, sample, save_dir))

        if save_dir is not None:
            self._write_manifest(save_dir, samples_for_saving)

    def save(self, save_path: Path | str):
        """Persists an already built store to `save_path`, in the format read by `load_sample_dataset`."""
        save_dir = self._prepare_save_dir(save_path)
        samples_for_saving = []
        for i in self._tqdm(range(len(self.samples))):
            sample = {k: self.get_field(i, k) for k in self.samples[i]}
            samples_for_saving.append(self._spill_tensors(i, sample, save_dir))
        self._write_manifest(save_dir, samples_for_saving)

    def get_field(self, index: int, key: str) -> Any:
        """Returns one field of one sample, loading it from disk if it is a tensor placeholder."""
        return resolve_placeholder(self.samples[index][key], self.data_dir)

    def __getitem__(self, index: int) -> dict[str, Any]:
        return {k: self.get_field(index, k) for k in self.schema_keys}

    def __len__(self) -> int:
        return len(self.samples)

    def __repr__(self) -> str:
        return (
            f"SampleDataset(dataset_name={self.dataset_name!r}, task_name={self.task_name!r}, "
            f"n_samples={len(self)})"
        )


def load_sample_dataset(path: Path | str) -> SampleDataset:
    """Reloads a persisted `SampleDataset`, replacing every tensor placeholder with the tensor it points to.

    Raises:
        FileNotFoundError: If `path` does not hold a saved sample dataset.
    """
    path = Path(path)
    manifest_fp = path / SAMPLE_DATASET_MANIFEST_FN
    if not manifest_fp.is_file():
        raise FileNotFoundError(f"Saved SampleDataset not found at {manifest_fp}")

    sd = SampleDataset._load(manifest_fp)
    sd.data_dir = path

    logger.info(f"Loading tensors from {path / TENSORS_DIR}...")
    for sample in sd._tqdm(sd.samples):
        for k, v in sample.items():
            sample[k] = resolve_placeholder(v, path)

    logger.info("SampleDataset loaded successfully.")
    return sd


def collate_fn_dict_with_padding(batch: list[dict[str, Any]]) -> dict[str, Any]:
    """Collates samples into a batch, padding variable-length tensors with zeros.

    Scalar tensors are stacked. For tensors with one or more dimensions, a ``"<key>_len"`` entry holds each
    sample's length along the first dimension; they are stacked if all shapes agree and right-padded otherwise.
    Non-tensor values are collected into lists.

    Examples:
        >>> batch = [
        ...     {"codes": torch.tensor([1, 2, 3]), "label": torch.tensor(1), "note": "a"},
        ...     {"codes": torch.tensor([4]), "label": torch.tensor(0), "note": "b"},
        ... ]
        >>> out = collate_fn_dict_with_padding(batch)
        >>> out["codes"]
        tensor([[1, 2, 3],
                [4, 0, 0]])
        >>> out["codes_len"]
        tensor([3, 1])
        >>> out["label"]
        tensor([1, 0])
        >>> out["note"]
        ['a', 'b']
    """
    collated = {}
    for key in batch[0]:
        values = [sample[key] for sample in batch]
        if not isinstance(values[0], torch.Tensor):
            collated[key] = values
            continue

        if values[0].dim() == 0:
            collated[key] = torch.stack(values)
            continue

        collated[f"{key}_len"] = torch.tensor([v.shape[0] for v in values], dtype=torch.long)
        if all(v.shape == values[0].shape for v in values):
            collated[key] = torch.stack(values).contiguous()
        else:
            collated[key] = torch.nn.utils.rnn.pad_sequence(values, batch_first=True, padding_value=0).contiguous()
    return collated


def get_dataloader(
    dataset: torch.utils.data.Dataset, batch_size: int, shuffle: bool = False
) -> torch.utils.data.DataLoader:
    return torch.utils.data.DataLoader(
        dataset, batch_size=batch_size, shuffle=shuffle, collate_fn=collate_fn_dict_with_padding
    )
