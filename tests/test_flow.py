import importlib

from lessonflow.pipelines.lesson import LessonPipeline


def test_stages_are_ordered_and_point_at_real_modules():
    stages = list(LessonPipeline.describe())

    assert [stage.order for stage in stages] == list(range(1, len(stages) + 1))
    for stage in stages:
        assert importlib.import_module(stage.module) is not None
