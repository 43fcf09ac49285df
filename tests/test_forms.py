import pytest

from workboard.errors import InvalidConfiguration
from workboard.forms import (
    AugmentationForm,
    FORM_MODELS,
    remote_path_for,
    validate_form,
)
from workboard.model import StageType

from conftest import FORMS, WS, augmentation_form, dataset_form, inference_form, network_form


@pytest.mark.parametrize("stage", list(StageType))
def test_every_stage_has_a_valid_example(stage):
    form = validate_form(stage, FORMS[stage.value]())
    assert isinstance(form, FORM_MODELS[stage])


def test_wire_format_is_camel_case():
    form = validate_form(StageType.NETWORK, network_form())
    wire = form.to_wire()
    assert wire["networkUserLabel"] == "unet_a"
    assert wire["slurmOptions"]["nGPU"] == "2"
    assert validate_form(StageType.NETWORK, wire) == form


def test_already_built_form_passes_through():
    form = validate_form(StageType.DATASET, dataset_form())
    assert validate_form(StageType.DATASET, form) is form


def test_form_of_wrong_stage_is_rejected():
    form = validate_form(StageType.DATASET, dataset_form())
    with pytest.raises(InvalidConfiguration):
        validate_form(StageType.NETWORK, form)


def test_errors_list_every_field():
    raw = dataset_form()
    raw["datasetName"] = "has space"
    raw["classes"] = 1
    raw["patchSize"] = 100
    with pytest.raises(InvalidConfiguration) as exc:
        validate_form(StageType.DATASET, raw)
    errors = "\n".join(exc.value.details["errors"])
    assert "dataset_name" in errors or "datasetName" in errors
    assert "classes" in errors
    assert "patch" in errors.lower()
    assert exc.value.details["stage"] == "dataset"


@pytest.mark.parametrize("image", ["scan.png", "a", "noext"])
def test_dataset_images_need_known_extensions(image):
    raw = dataset_form()
    raw["data"][0]["image"] = image
    with pytest.raises(InvalidConfiguration):
        validate_form(StageType.DATASET, raw)


def test_dataset_needs_data():
    raw = dataset_form()
    raw["data"] = []
    with pytest.raises(InvalidConfiguration):
        validate_form(StageType.DATASET, raw)


def test_augmentation_needs_a_selection():
    raw = augmentation_form()
    raw["augmentationArgs"] = {"rot90": {"select": False}}
    with pytest.raises(InvalidConfiguration):
        validate_form(StageType.AUGMENTATION, raw)


@pytest.mark.parametrize("interval", [[5, 1], [3, 3], [-1, 2]])
def test_augmentation_intervals(interval):
    raw = augmentation_form()
    raw["augmentationArgs"]["gaussianBlur"] = {"select": True, "sigma": interval}
    with pytest.raises(InvalidConfiguration):
        validate_form(StageType.AUGMENTATION, raw)


def test_augmentation_selected_in_declaration_order():
    form = validate_form(StageType.AUGMENTATION, augmentation_form())
    assert isinstance(form, AugmentationForm)
    assert list(form.augmentation_args.selected()) == ["rot90", "elastic"]


@pytest.mark.parametrize("label", ["a", "bad label", "dash-ed"])
def test_network_label(label):
    with pytest.raises(InvalidConfiguration):
        validate_form(StageType.NETWORK, network_form(label))


def test_network_gpu_count():
    raw = network_form()
    raw["slurmOptions"]["nGPU"] = "3"
    with pytest.raises(InvalidConfiguration):
        validate_form(StageType.NETWORK, raw)


@pytest.mark.parametrize("partition", ["cpu\n#SBATCH --mem=1T", "a b", "gpu;rm"])
def test_partition_must_be_a_plain_name(partition):
    raw = dataset_form()
    raw["slurmOptions"]["partition"] = partition
    with pytest.raises(InvalidConfiguration):
        validate_form(StageType.DATASET, raw)


def test_inference_output_dir_must_be_directory():
    with pytest.raises(InvalidConfiguration):
        validate_form(StageType.INFERENCE, inference_form("/data/out"))


def test_remote_paths():
    ds = validate_form(StageType.DATASET, dataset_form("train"))
    aug = validate_form(StageType.AUGMENTATION, augmentation_form("train_aug"))
    net = validate_form(StageType.NETWORK, network_form("unet_a"))
    inf = validate_form(StageType.INFERENCE, inference_form("/out/"))
    ft = validate_form(StageType.FINETUNE, FORMS["finetune"]())

    assert remote_path_for(StageType.DATASET, ds, WS + "/") == f"{WS}/datasets/train.h5"
    assert remote_path_for(StageType.AUGMENTATION, aug, WS) == f"{WS}/datasets/train_aug.h5"
    assert remote_path_for(StageType.NETWORK, net, WS) == f"{WS}/networks/unet_a"
    assert remote_path_for(StageType.INFERENCE, inf, WS) == "/out/"
    assert remote_path_for(StageType.FINETUNE, ft, WS) is None
