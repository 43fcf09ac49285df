# forms.py
"""
Stage configuration forms.

One pydantic model per stage type; `FORM_MODELS` is the tag -> variant map
used everywhere stage specific behaviour is needed. Field names are
snake_case in Python and camelCase on the wire (snapshot JSON / HTTP).
"""
from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Type, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .errors import InvalidConfiguration
from .model import StageType

IMAGE_PATTERN = r"^.*\.(tif|tiff|TIFF|hdf5|h5|raw|b)$"

POWER_SIZES = (16, 32, 64, 128, 256, 512, 1024)
BATCH_SIZES = (2, 4, 8, 16, 32)
INFERENCE_PADDING_SIZES = (0, 2, 4, 8)
INFERENCE_PATCH_SIZES = (0, 2, 4, 8, 16)


class FormModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


def _one_of(allowed: tuple) -> Any:
    def check(value: int) -> int:
        if value not in allowed:
            raise ValueError(f"must be one of {list(allowed)}")
        return value
    return AfterValidator(check)


def _no_spaces(value: str) -> str:
    if " " in value:
        raise ValueError("No Spaces!")
    return value


def _check_interval(value: Optional[tuple]) -> Optional[tuple]:
    if value is None:
        return value
    lo, hi = value
    if lo < 0 or hi < 0:
        raise ValueError("Must be greater than 0")
    if lo >= hi:
        raise ValueError("Min must be less than max")
    return value


FloatInterval = Annotated[Tuple[float, float], AfterValidator(_check_interval)]
IntInterval = Annotated[Tuple[int, int], AfterValidator(_check_interval)]
StageName = Annotated[str, Field(min_length=1), AfterValidator(_no_spaces)]
ImageName = Annotated[str, Field(min_length=2, pattern=IMAGE_PATTERN)]


# ----------------------------------------------------------------------
# Scheduler options
# ----------------------------------------------------------------------

class SlurmOptions(FormModel):
    partition: str = Field(min_length=1, pattern=r"^[\w.-]+$")


class GpuSlurmOptions(SlurmOptions):
    n_gpu: Literal["1", "2", "4"] = Field(default="1", alias="nGPU")


# ----------------------------------------------------------------------
# Dataset
# ----------------------------------------------------------------------

class DatasetEntry(FormModel):
    image: ImageName
    label: ImageName
    weight_map: Optional[ImageName] = None


class DatasetForm(FormModel):
    slurm_options: SlurmOptions
    dataset_name: StageName
    data: List[DatasetEntry] = Field(min_length=1)
    patch_size: Annotated[int, _one_of(POWER_SIZES)] = 64
    sample_size: int = Field(default=2, ge=1)
    strategy: Literal["uniform"] = "uniform"
    classes: int = Field(default=2, ge=2)


# ----------------------------------------------------------------------
# Augmentation
# ----------------------------------------------------------------------

class Toggle(FormModel):
    select: bool = False


class ElasticOp(Toggle):
    alpha: Optional[IntInterval] = None
    sigma: Optional[IntInterval] = None


class GaussianBlurOp(Toggle):
    sigma: Optional[FloatInterval] = None


class FactorOp(Toggle):
    factor: Optional[FloatInterval] = None


class AverageBlurOp(Toggle):
    kernel_size: Optional[IntInterval] = None


class PoissonNoiseOp(Toggle):
    scale: Optional[FloatInterval] = None


class AugmentationArgs(FormModel):
    rot90: Toggle = Field(default_factory=Toggle)
    rot270: Toggle = Field(default_factory=Toggle)
    flip_horizontal: Toggle = Field(default_factory=Toggle)
    flip_vertical: Toggle = Field(default_factory=Toggle)
    elastic: ElasticOp = Field(default_factory=ElasticOp)
    gaussian_blur: GaussianBlurOp = Field(default_factory=GaussianBlurOp)
    contrast: FactorOp = Field(default_factory=FactorOp)
    average_blur: AverageBlurOp = Field(default_factory=AverageBlurOp)
    linear_contrast: FactorOp = Field(default_factory=FactorOp)
    dropout: FactorOp = Field(default_factory=FactorOp)
    poisson_noise: PoissonNoiseOp = Field(default_factory=PoissonNoiseOp)

    def selected(self) -> Dict[str, Toggle]:
        """Selected operations keyed by their python field name, in declaration order."""
        return {
            name: getattr(self, name)
            for name in type(self).model_fields
            if getattr(self, name).select
        }


class AugmentationForm(FormModel):
    slurm_options: GpuSlurmOptions
    augmented_dataset_name: StageName
    augmentation_args: AugmentationArgs

    @field_validator("augmentation_args")
    @classmethod
    def _at_least_one(cls, value: AugmentationArgs) -> AugmentationArgs:
        if not value.selected():
            raise ValueError("Select at least one augmentation")
        return value


# ----------------------------------------------------------------------
# Training (network + finetune)
# ----------------------------------------------------------------------

class TrainingForm(FormModel):
    slurm_options: GpuSlurmOptions
    drop_classifier: bool = False
    iterations: int = Field(ge=1)
    learning_rate: float = Field(gt=0)
    optimizer: Literal["adam", "adagrad", "gradientdescent"] = "adam"
    loss_function: Literal["CrossEntropy", "dice", "xent_dice"] = "CrossEntropy"
    patch_size: Annotated[int, _one_of(POWER_SIZES)] = 64
    batch_size: Annotated[int, _one_of(BATCH_SIZES)] = 4


class NetworkForm(TrainingForm):
    network_user_label: str = Field(min_length=2, pattern=r"^[a-zA-Z0-9_]*$")
    network_type_name: Literal["unet2d", "unet3d", "vnet"]


class FinetuneForm(TrainingForm):
    pass


# ----------------------------------------------------------------------
# Inference
# ----------------------------------------------------------------------

class InferenceImage(FormModel):
    name: ImageName
    path: str


class InferenceForm(FormModel):
    slurm_options: GpuSlurmOptions
    output_dir: str
    input_images: List[InferenceImage] = Field(min_length=1)
    save_prob_map: bool = False
    normalize: bool = False
    padding_size: Annotated[int, _one_of(INFERENCE_PADDING_SIZES)] = 0
    patch_size: Annotated[int, _one_of(INFERENCE_PATCH_SIZES)] = 0

    @field_validator("output_dir")
    @classmethod
    def _is_directory(cls, value: str) -> str:
        if not value.endswith("/"):
            raise ValueError("Must be a valid directory!")
        return value


StageForm = Union[DatasetForm, AugmentationForm, NetworkForm, FinetuneForm, InferenceForm]

FORM_MODELS: Dict[StageType, Type[FormModel]] = {
    StageType.DATASET: DatasetForm,
    StageType.AUGMENTATION: AugmentationForm,
    StageType.NETWORK: NetworkForm,
    StageType.FINETUNE: FinetuneForm,
    StageType.INFERENCE: InferenceForm,
}
if set(FORM_MODELS) != set(StageType):
    raise RuntimeError("every stage type needs a form model")


def _format_errors(exc: ValidationError) -> List[str]:
    out = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "<form>"
        out.append(f"{loc}: {err.get('msg')}")
    return out


def validate_form(stage_type: StageType, raw: Any) -> StageForm:
    """
    Validate `raw` (a dict from the wire, or an already built form) as the
    form of `stage_type`.

    Raises:
        InvalidConfiguration: listing every failing field
    """
    stage_type = StageType(stage_type)
    model = FORM_MODELS[stage_type]
    if isinstance(raw, model):
        return raw
    if isinstance(raw, BaseModel):
        raise InvalidConfiguration(
            f"{type(raw).__name__} is not a {stage_type.value} form",
            {"stage": stage_type.value},
        )
    try:
        return model.model_validate(raw)
    except ValidationError as e:
        errors = _format_errors(e)
        raise InvalidConfiguration(
            f"Invalid {stage_type.value} configuration",
            {"stage": stage_type.value, "errors": errors},
        ) from e


def remote_path_for(stage_type: StageType, form: StageForm, workspace_path: str) -> Optional[str]:
    """
    Directory/file on the cluster holding the artifacts of a stage.

    Finetune trains its upstream network in place, so its path is only known
    once the node is connected; it returns None here.
    """
    ws = workspace_path.rstrip("/")
    if stage_type is StageType.DATASET:
        return f"{ws}/datasets/{form.dataset_name}.h5"
    if stage_type is StageType.AUGMENTATION:
        return f"{ws}/datasets/{form.augmented_dataset_name}.h5"
    if stage_type is StageType.NETWORK:
        return f"{ws}/networks/{form.network_user_label}"
    if stage_type is StageType.INFERENCE:
        return form.output_dir
    if stage_type is StageType.FINETUNE:
        return None
    raise ValueError(f"Unhandled stage type: {stage_type}")


def validate_slurm_options(raw: Any) -> SlurmOptions:
    """
    Scheduler options for jobs that have no stage form (workspace setup).

    Raises:
        InvalidConfiguration: listing every failing field
    """
    try:
        return SlurmOptions.model_validate(raw)
    except ValidationError as e:
        raise InvalidConfiguration("Invalid scheduler options", {"errors": _format_errors(e)}) from e
