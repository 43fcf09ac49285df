import pytest

from workboard.errors import InvalidConfiguration
from workboard.scripts import Container, build_batch_job, build_workspace_job, resolve_inputs

from conftest import FORMS, WS, finished_node

CONTAINER = Container(image="/containers/ds.sif", bind="/data")


def test_dataset_script(store):
    node = store.add_node("dataset")
    node = store.configure(node.id, FORMS["dataset"]())
    job = build_batch_job(node, resolve_inputs(node, store.sources_of), CONTAINER)
    lines = job.script.splitlines()
    assert lines[0] == "#!/bin/bash"
    assert "#SBATCH --job-name=workboard-dataset" in lines
    assert f"#SBATCH --output={WS}/logs/%j-%x.out" in lines
    assert "#SBATCH --partition=cpu" in lines
    assert not any(line.startswith("#SBATCH --gres") for line in lines)
    command = lines[-1]
    assert command.startswith("singularity run --nv --no-home --bind /data /containers/ds.sif ssc-deepsirius create_dataset")
    assert "--sampling-size 64 64 64" in command
    assert "--input-imgs /data/img1.tif" in command
    assert "--input-weights" not in command


def test_network_script_uses_upstream_dataset(store):
    d = finished_node(store, "dataset", "1")
    net = store.add_node("network")
    store.add_edge(d.id, net.id)
    net = store.configure(net.id, FORMS["network"]())
    job = build_batch_job(net, resolve_inputs(net, store.sources_of), CONTAINER)
    assert "#SBATCH --gres=gpu:2" in job.script
    assert "--no-home" not in job.script
    assert job.script.rstrip().endswith(f"{WS} unet2d unet_a {WS}/datasets/train.h5")
    assert job.remote_path is None


def test_augmentation_script(store):
    d = finished_node(store, "dataset", "1")
    aug = store.add_node("augmentation")
    store.add_edge(d.id, aug.id)
    aug = store.configure(aug.id, FORMS["augmentation"]())
    job = build_batch_job(aug, resolve_inputs(aug, store.sources_of), CONTAINER)
    assert f"augment_dataset {WS} {WS}/datasets/train.h5 train_aug" in job.script
    assert "--aug-params rotate_90" in job.script
    assert "--aug-params elastic_deformation" in job.script
    assert "--elastic-deformation-alpha 1 5" in job.script


def test_finetune_trains_upstream_network_in_place(store):
    d = finished_node(store, "dataset", "1")
    n = finished_node(store, "network", "2")
    ft = store.add_node("finetune")
    store.add_edge(n.id, ft.id)
    store.add_edge(d.id, ft.id)
    ft = store.configure(ft.id, FORMS["finetune"]())
    inputs = resolve_inputs(ft, store.sources_of)
    job = build_batch_job(ft, inputs, CONTAINER)
    assert "--use-finetune" in job.script
    assert job.remote_path == f"{WS}/networks/unet_a"
    assert inputs.network_type == "unet2d"


def test_finetune_chain_inherits_dataset(store):
    d = finished_node(store, "dataset", "1")
    n = finished_node(store, "network", "2")
    ft1 = store.add_node("finetune")
    store.add_edge(n.id, ft1.id)
    store.add_edge(d.id, ft1.id)
    store.configure(ft1.id, FORMS["finetune"]())
    store.mark_submitted(ft1.id, "3", remote_path=f"{WS}/networks/unet_a")
    store.apply_job_state(ft1.id, "COMPLETED")
    ft2 = store.add_node("finetune")
    store.add_edge(ft1.id, ft2.id)
    ft2 = store.configure(ft2.id, FORMS["finetune"]())

    inputs = resolve_inputs(ft2, store.sources_of)
    assert inputs.dataset_path == f"{WS}/datasets/train.h5"
    assert inputs.network_path == f"{WS}/networks/unet_a"
    assert inputs.network_label == "unet_a"


def test_inference_script(store):
    n = finished_node(store, "network", "2")
    inf = store.add_node("inference")
    store.add_edge(n.id, inf.id)
    inf = store.configure(inf.id, FORMS["inference"]())
    job = build_batch_job(inf, resolve_inputs(inf, store.sources_of), CONTAINER)
    assert f"run_inference {WS} unet_a {WS}/inference/run1/" in job.script
    assert "--padding 2 2 2 --border 4 4 4" in job.script
    assert "--out-net-op save_prob_map" in job.script
    assert "--no-norm-data" in job.script


@pytest.mark.parametrize("stage", ["augmentation", "network", "finetune", "inference"])
def test_missing_upstream(store, stage):
    node = store.add_node(stage)
    node = store.configure(node.id, FORMS[stage]())
    with pytest.raises(InvalidConfiguration, match="missing its upstream"):
        resolve_inputs(node, store.sources_of)


def test_unconfigured_node(store):
    node = store.add_node("dataset")
    with pytest.raises(InvalidConfiguration):
        build_batch_job(node, resolve_inputs(node, store.sources_of), CONTAINER)


def test_values_are_shell_quoted(store):
    node = store.add_node("dataset")
    form = FORMS["dataset"]()
    form["data"][0]["image"] = "/data/my scan.tif"
    node = store.configure(node.id, form)
    job = build_batch_job(node, resolve_inputs(node, store.sources_of), CONTAINER)
    assert "--input-imgs '/data/my scan.tif'" in job.script


def test_workspace_script():
    job = build_workspace_job(WS + "/", "cpu", CONTAINER)
    lines = job.script.splitlines()
    assert "#SBATCH --job-name=workboard-workspace" in lines
    assert f"#SBATCH --output={WS}/logs/%j-%x.out" in lines
    assert "#SBATCH --partition=cpu" in lines
    assert lines[-1] == f"singularity run --nv --no-home --bind /data /containers/ds.sif ssc-deepsirius create_workspace {WS}"
    assert job.remote_path == WS


@pytest.mark.parametrize("partition", ["", "gpu\n#SBATCH --mem=1T"])
def test_workspace_script_rejects_bad_partition(partition):
    with pytest.raises(InvalidConfiguration):
        build_workspace_job(WS, partition, CONTAINER)


def test_workspace_with_whitespace_is_rejected():
    with pytest.raises(InvalidConfiguration):
        build_workspace_job("/data/my ws", "cpu", CONTAINER)
