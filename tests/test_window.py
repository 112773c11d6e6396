import pytest

from edgetrail import WindowSpec, select_window


def test_regular_window_walks_back_by_spacing():
    assert select_window(10, WindowSpec(3, 4), 20) == [10, 6, 2]


def test_window_shrinks_near_sequence_start():
    assert select_window(5, WindowSpec(3, 4), 20) == [5, 1]
    assert select_window(1, WindowSpec(2, 1), 5) == [1, 0]


@pytest.mark.parametrize("frames_to_combine", [1, 2, 5, 100])
def test_first_frame_only_combines_with_itself(frames_to_combine):
    assert select_window(0, WindowSpec(frames_to_combine, 3), 10) == [0]


def test_zero_spacing_collapses_to_target():
    assert select_window(4, WindowSpec(5, 0), 10) == [4]
    assert select_window(0, WindowSpec(1, 0), 10) == [0]


def test_zero_frames_to_combine_is_empty():
    assert select_window(3, WindowSpec(0, 2), 10) == []
    assert select_window(3, WindowSpec(0, 0), 10) == []


def test_window_indices_stay_in_range():
    spec = WindowSpec(4, 3)
    for target in range(12):
        window = select_window(target, spec, 12)
        assert window[0] == target
        assert all(0 <= i <= target for i in window)
        assert window == sorted(window, reverse=True)


def test_target_outside_sequence_is_rejected():
    with pytest.raises(IndexError):
        select_window(5, WindowSpec(2, 1), 5)
    with pytest.raises(IndexError):
        select_window(-1, WindowSpec(2, 1), 5)


@pytest.mark.parametrize("frames_to_combine,frame_spacing", [(-1, 1), (1, -2), (1.5, 1), (2, "1"), (True, 1)])
def test_window_spec_validation(frames_to_combine, frame_spacing):
    with pytest.raises(ValueError):
        WindowSpec(frames_to_combine, frame_spacing)
