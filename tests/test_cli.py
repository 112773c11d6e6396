import cv2
import numpy as np
import pytest

from edgetrail import main


def run(*args):
    return main([str(a) for a in args])


def test_cli_writes_trail_frames(tmp_path, frame_folder, rng):
    frames = [rng.integers(0, 256, (10, 12), dtype=np.uint8) for _ in range(5)]
    folder = frame_folder(frames)
    out = tmp_path / "out"

    assert run("--input-folder", folder, "--output-folder", out,
               "--frames", 2, "--frame-spacing", 1, "--ext", "png", "--workers", 2) == 0

    names = sorted(p.name for p in out.iterdir())
    assert names == ["0001.png", "0002.png", "0003.png", "0004.png", "0005.png"]
    assert cv2.imread(str(out / "0003.png"), cv2.IMREAD_GRAYSCALE).shape == (10, 12)


def test_cli_frame_range(tmp_path, frame_folder, rng):
    frames = [rng.integers(0, 256, (6, 6), dtype=np.uint8) for _ in range(6)]
    folder = frame_folder(frames)
    out = tmp_path / "out"

    run("-i", folder, "-o", out, "-f", 3, "-s", 1, "--start", 2, "--end", 4, "--no-parallel")

    assert sorted(p.name for p in out.iterdir()) == ["0001.jpg", "0002.jpg", "0003.jpg"]


def test_cli_debug_mode_writes_only_graph(tmp_path, frame_folder, rng):
    frames = [rng.integers(0, 256, (6, 6), dtype=np.uint8) for _ in range(4)]
    folder = frame_folder(frames)
    out = tmp_path / "out"

    assert run("-i", folder, "-o", out, "--frames", 2, "--frame-spacing", 1, "--debug") == 0

    assert [p.name for p in out.iterdir()] == ["edge_activity.png"]


def test_cli_mismatched_frames_produce_no_output(tmp_path, frame_folder):
    folder = frame_folder([np.zeros((4, 4), dtype=np.uint8)])
    cv2.imwrite(str(folder / "frame2.png"), np.zeros((5, 4), dtype=np.uint8))
    out = tmp_path / "out"

    with pytest.raises(SystemExit) as exc:
        run("-i", folder, "-o", out, "--frames", 2, "--frame-spacing", 1)

    assert exc.value.code == 1
    assert not out.exists()


def test_cli_empty_folder(tmp_path, capsys):
    empty = tmp_path / "empty"
    empty.mkdir()

    with pytest.raises(SystemExit) as exc:
        run("-i", empty, "-o", tmp_path / "out", "--frames", 2, "--frame-spacing", 1)

    assert exc.value.code == 1
    assert "No frames to process" in capsys.readouterr().out


def test_cli_undecodable_file(tmp_path, frame_folder):
    folder = frame_folder([np.zeros((4, 4), dtype=np.uint8)])
    (folder / "frame2.txt").write_text("hello")

    with pytest.raises(SystemExit) as exc:
        run("-i", folder, "-o", tmp_path / "out", "--frames", 1, "--frame-spacing", 1)
    assert exc.value.code == 1


@pytest.mark.parametrize("extra", [
    ["--frames", "-1", "--frame-spacing", "1"],
    ["--frames", "1", "--frame-spacing", "-3"],
    ["--frames", "1", "--frame-spacing", "1", "--workers", "0"],
    ["--frames", "1", "--frame-spacing", "1", "--quality", "0"],
    ["--frames", "1", "--frame-spacing", "1", "--start", "3", "--end", "1"],
])
def test_cli_rejects_bad_arguments(tmp_path, frame_folder, extra):
    folder = frame_folder([np.zeros((4, 4), dtype=np.uint8)])
    with pytest.raises(SystemExit) as exc:
        run("-i", folder, "-o", tmp_path / "out", *extra)
    assert exc.value.code == 1


def test_cli_missing_input_folder(tmp_path):
    with pytest.raises(SystemExit) as exc:
        run("-i", tmp_path / "nope", "--frames", 1, "--frame-spacing", 1)
    assert exc.value.code == 1


def test_cli_requires_window_arguments(tmp_path):
    with pytest.raises(SystemExit) as exc:
        run("-i", tmp_path)
    assert exc.value.code == 2
