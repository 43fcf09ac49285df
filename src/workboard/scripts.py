# scripts.py
"""
Batch scripts for each stage type.

Every stage runs the processing CLI inside the cluster container:

    singularity run --nv [--no-home] --bind <bind> <image> ssc-deepsirius <subcommand> ...

`resolve_inputs` walks the graph to find what a node consumes (dataset
file, trained network); `build_batch_job` turns the node form plus those
inputs into a complete sbatch script. `build_workspace_job` renders the
one-off job that creates a workspace.
"""
from __future__ import annotations

import shlex
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .errors import InvalidConfiguration
from .forms import (
    AugmentationForm,
    DatasetForm,
    FinetuneForm,
    GpuSlurmOptions,
    InferenceForm,
    NetworkForm,
    SlurmOptions,
    TrainingForm,
    validate_slurm_options,
)
from .model import StageNode, StageType

PROCESSING_CLI = "ssc-deepsirius"

# form field -> name understood by `augment_dataset --aug-params`
AUGMENTATION_PARAMS: Dict[str, str] = {
    "rot90": "rotate_90",
    "rot270": "rotate_-90",
    "flip_horizontal": "flip_horizontal",
    "flip_vertical": "flip_vertical",
    "elastic": "elastic_deformation",
    "gaussian_blur": "gaussian_blur",
    "contrast": "contrast",
    "average_blur": "avg_blur",
    "linear_contrast": "linear_contrast",
    "dropout": "dropout",
    "poisson_noise": "additive_poisson",
}


@dataclass(frozen=True)
class Container:
    image: str
    bind: str

    def command(self, *, no_home: bool = True) -> str:
        parts = ["singularity", "run", "--nv"]
        if no_home:
            parts.append("--no-home")
        parts += ["--bind", shlex.quote(self.bind), shlex.quote(self.image)]
        return " ".join(parts)


@dataclass(frozen=True)
class StageInputs:
    """What a node consumes from upstream nodes."""
    dataset_path: Optional[str] = None
    network_path: Optional[str] = None
    network_type: Optional[str] = None
    network_label: Optional[str] = None


@dataclass(frozen=True)
class BatchJob:
    name: str
    script: str
    # Where the job writes; only set when the node form alone cannot tell.
    remote_path: Optional[str] = None


# ----------------------------------------------------------------------
# Upstream resolution
# ----------------------------------------------------------------------

def resolve_inputs(node: StageNode, sources_of: Callable[[str], List[StageNode]]) -> StageInputs:
    """
    Find the dataset / network a node consumes.

    Finetune chains inherit the dataset of the finetune they continue when
    they have no dataset source of their own.

    Raises:
        InvalidConfiguration: a required upstream is missing or not finished
    """
    dataset_path = network_path = network_type = network_label = None
    visited = set()
    current = node
    while current.id not in visited:
        visited.add(current.id)
        upstream = sources_of(current.id)
        for src in upstream:
            if src.type in (StageType.DATASET, StageType.AUGMENTATION):
                dataset_path = dataset_path or src.remote_path
            elif src.type is StageType.NETWORK:
                network_path = network_path or src.remote_path
                if network_label is None and src.form is not None:
                    network_type = src.form.network_type_name
                    network_label = src.form.network_user_label
        parent = next((s for s in upstream if s.type is StageType.FINETUNE), None)
        if current.type is not StageType.FINETUNE or parent is None:
            break
        if network_path is None:
            network_path = parent.remote_path
        current = parent

    inputs = StageInputs(dataset_path, network_path, network_type, network_label)
    _require_inputs(node, inputs)
    return inputs


def _require_inputs(node: StageNode, inputs: StageInputs) -> None:
    missing = []
    if node.type in (StageType.AUGMENTATION, StageType.NETWORK, StageType.FINETUNE) and not inputs.dataset_path:
        missing.append("dataset")
    if node.type in (StageType.FINETUNE, StageType.INFERENCE) and not inputs.network_path:
        missing.append("network")
    if node.type in (StageType.FINETUNE, StageType.INFERENCE) and not inputs.network_label:
        missing.append("network configuration")
    if missing:
        raise InvalidConfiguration(
            f"Node '{node.id}' ({node.type.value}) is missing its upstream {' and '.join(missing)}",
            {"node": node.id, "missing": missing},
        )


# ----------------------------------------------------------------------
# Script rendering
# ----------------------------------------------------------------------

def _header(job_name: str, workspace: str, slurm: SlurmOptions) -> List[str]:
    # #SBATCH values cannot be quoted
    if any(c.isspace() for c in workspace):
        raise InvalidConfiguration("Workspace path may not contain whitespace", {"workspace": workspace})
    lines = [
        "#!/bin/bash",
        f"#SBATCH --job-name={job_name}",
        f"#SBATCH --output={workspace}/logs/%j-%x.out",
        f"#SBATCH --error={workspace}/logs/%j-%x.err",
        "#SBATCH --ntasks=1",
        f"#SBATCH --partition={slurm.partition}",
    ]
    if isinstance(slurm, GpuSlurmOptions):
        lines.append(f"#SBATCH --gres=gpu:{slurm.n_gpu}")
    return lines


def _q(value: object) -> str:
    return shlex.quote(str(value))


def _triple(value: int) -> str:
    return " ".join([str(value)] * 3)


def _dataset_args(form: DatasetForm, ws: str, inputs: StageInputs) -> List[str]:
    args = ["create_dataset", _q(ws), _q(form.dataset_name)]
    args += ["--n-classes", str(form.classes), "--n-samples", str(form.sample_size)]
    args += ["--sampling-size", _triple(form.patch_size)]
    args += [f"--input-imgs {_q(d.image)}" for d in form.data]
    args += [f"--input-labels {_q(d.label)}" for d in form.data]
    args += [f"--input-weights {_q(d.weight_map)}" for d in form.data if d.weight_map]
    return args


def _augmentation_args(form: AugmentationForm, ws: str, inputs: StageInputs) -> List[str]:
    args = ["augment_dataset", _q(ws), _q(inputs.dataset_path), _q(form.augmented_dataset_name)]
    for name, op in form.augmentation_args.selected().items():
        param = AUGMENTATION_PARAMS[name]
        args.append(f"--aug-params {_q(param)}")
        for field_name in type(op).model_fields:
            if field_name == "select":
                continue
            interval = getattr(op, field_name)
            if interval is not None:
                flag = f"{param}-{field_name}".replace("_", "-")
                args.append(f"--{flag} {interval[0]} {interval[1]}")
    return args


def _training_kwargs(form: TrainingForm) -> List[str]:
    return [
        "--max-iter", str(form.iterations),
        "--learning-rate", str(form.learning_rate),
        "--optimiser", form.optimizer,
        "--loss", form.loss_function,
        "--batch-size", str(form.batch_size),
        "--drop-classifier", str(form.drop_classifier).lower(),
        "--net-patch-size", _triple(form.patch_size),
    ]


def _network_args(form: NetworkForm, ws: str, inputs: StageInputs) -> List[str]:
    return ["train_model", *_training_kwargs(form),
            _q(ws), _q(form.network_type_name), _q(form.network_user_label), _q(inputs.dataset_path)]


def _finetune_args(form: FinetuneForm, ws: str, inputs: StageInputs) -> List[str]:
    return ["train_model", *_training_kwargs(form), "--use-finetune",
            _q(ws), _q(inputs.network_type), _q(inputs.network_label), _q(inputs.dataset_path)]


def _inference_args(form: InferenceForm, ws: str, inputs: StageInputs) -> List[str]:
    args = ["run_inference", _q(ws), _q(inputs.network_label), _q(form.output_dir)]
    args += ["--padding", _triple(form.padding_size), "--border", _triple(form.patch_size)]
    args += ["--out-net-op", "save_prob_map" if form.save_prob_map else "save_label"]
    args.append("--norm-data" if form.normalize else "--no-norm-data")
    args += [f"--list-imgs-infer {_q(img.path)}" for img in form.input_images]
    return args


_RENDERERS = {
    StageType.DATASET: _dataset_args,
    StageType.AUGMENTATION: _augmentation_args,
    StageType.NETWORK: _network_args,
    StageType.FINETUNE: _finetune_args,
    StageType.INFERENCE: _inference_args,
}


def build_batch_job(node: StageNode, inputs: StageInputs, container: Container) -> BatchJob:
    """
    Raises:
        InvalidConfiguration: the node has no form yet
    """
    if node.form is None:
        raise InvalidConfiguration(f"Node '{node.id}' has no configuration", {"node": node.id})
    ws = node.workspace_path.rstrip("/")
    job_name = f"workboard-{node.type.value}"
    args = _RENDERERS[node.type](node.form, ws, inputs)
    # training needs the user's home for framework caches
    no_home = node.type not in (StageType.NETWORK, StageType.FINETUNE)
    command = f"{container.command(no_home=no_home)} {PROCESSING_CLI} {' '.join(args)}"
    script = "\n".join(_header(job_name, ws, node.form.slurm_options) + ["", command, ""])
    remote_path = inputs.network_path if node.type is StageType.FINETUNE else None
    return BatchJob(name=job_name, script=script, remote_path=remote_path)


def build_workspace_job(workspace_path: str, partition: str, container: Container) -> BatchJob:
    """
    Script that lays out a new workspace tree on the cluster.

    Its own log goes to `<workspace>/logs`, so that directory must exist
    before the job is submitted.

    Raises:
        InvalidConfiguration: the partition is not a valid name
    """
    slurm = validate_slurm_options({"partition": partition})
    ws = workspace_path.rstrip("/")
    job_name = "workboard-workspace"
    command = f"{container.command()} {PROCESSING_CLI} create_workspace {_q(ws)}"
    script = "\n".join(_header(job_name, ws, slurm) + ["", command, ""])
    return BatchJob(name=job_name, script=script, remote_path=ws)
