import numpy as np
import pandas as pd
import pytest

from edger_py.design import (
    SampleDesign,
    align_metadata,
    make_contrast,
    model_matrix,
    parse_contrast_expression,
)
from edger_py.errors import ConfigurationError, ValidationError


def test_model_matrix_treatment_coding(group_design):
    assert group_design.columns == ("Intercept", "group[T.B]")
    np.testing.assert_array_equal(group_design.matrix[:, 0], np.ones(6))
    np.testing.assert_array_equal(group_design.matrix[:, 1], [0, 0, 0, 1, 1, 1])


def test_model_matrix_reference_level(metadata):
    design = model_matrix(metadata, ["group"], reference_levels={"group": "B"})
    assert design.columns == ("Intercept", "group[T.A]")
    np.testing.assert_array_equal(design.matrix[:, 1], [1, 1, 1, 0, 0, 0])


def test_model_matrix_without_intercept(metadata):
    design = model_matrix(metadata, ["group"], intercept=False)
    assert design.columns == ("group[A]", "group[B]")


def test_model_matrix_missing_factor(metadata):
    with pytest.raises(ValidationError):
        model_matrix(metadata, ["batch"])


def test_zero_columns_dropped():
    X = np.array([[1, 0, 0], [1, 0, 0], [1, 1, 0], [1, 1, 0]], dtype=float)
    design = SampleDesign.from_matrix(X, columns=["Intercept", "trt", "empty"])
    assert design.columns == ("Intercept", "trt")
    assert design.dropped == ("empty",)


def test_rank_deficient_design_rejected():
    X = np.array([[1, 1], [1, 1], [1, 1]], dtype=float)
    with pytest.raises(ValidationError, match="rank deficient"):
        SampleDesign.from_matrix(X)


def test_aligned_to_reorders_rows(group_design):
    order = ["B1", "A1", "B2", "A2", "B3", "A3"]
    aligned = group_design.aligned_to(order)
    np.testing.assert_array_equal(aligned.matrix[:, 1], [1, 0, 1, 0, 1, 0])
    with pytest.raises(ValidationError):
        group_design.aligned_to(["A1", "A2"])


def test_align_metadata(metadata):
    out = align_metadata(metadata.iloc[::-1], list(metadata.index), required=["group"])
    assert list(out.index) == list(metadata.index)
    with pytest.raises(ValidationError):
        align_metadata(metadata, list(metadata.index) + ["C1"])
    with pytest.raises(ValidationError):
        align_metadata(metadata, list(metadata.index), required=["batch"])


def test_parse_contrast_expression():
    assert parse_contrast_expression("B - A") == {"B": 1.0, "A": -1.0}
    assert parse_contrast_expression("0.5*t1 + 0.5*t2 - ctrl") == {
        "t1": 0.5, "t2": 0.5, "ctrl": -1.0}


def test_make_contrast_forms(group_design):
    expected = np.array([[0.0], [1.0]])
    np.testing.assert_array_equal(make_contrast(group_design, 1), expected)
    np.testing.assert_array_equal(make_contrast(group_design, "group[T.B]"), expected)
    np.testing.assert_array_equal(make_contrast(group_design, {"group[T.B]": 1}), expected)
    np.testing.assert_array_equal(make_contrast(group_design, [0, 1]), expected)


def test_make_contrast_errors(group_design):
    with pytest.raises(ConfigurationError):
        make_contrast(group_design, 5)
    with pytest.raises(ConfigurationError):
        make_contrast(group_design, [0, 1, 0])
    with pytest.raises(ConfigurationError):
        make_contrast(group_design, "group[T.C]")
    with pytest.raises(ConfigurationError):
        make_contrast(group_design, True)


def test_contrast_on_dropped_column():
    X = pd.DataFrame({"Intercept": [1.0] * 4, "trt": [0.0, 0.0, 1.0, 1.0],
                      "empty": [0.0] * 4}, index=["s1", "s2", "s3", "s4"])
    design = SampleDesign.from_matrix(X)
    with pytest.raises(ConfigurationError, match="dropped"):
        make_contrast(design, "empty")
    with pytest.raises(ConfigurationError, match="dropped"):
        make_contrast(design, [0, 0, 1])
    np.testing.assert_array_equal(make_contrast(design, [0, 1, 0]), [[0.0], [1.0]])
