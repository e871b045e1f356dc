import numpy as np
import pandas as pd
import pytest

from bidopt.bidding.features import KeywordFeatureExtractor


@pytest.fixture
def extractor():
    return KeywordFeatureExtractor()


@pytest.mark.parametrize(
    "text,expected",
    [
        ("acme brand shoes", "brand"),
        ("Official Store Socks", "brand"),
        ("acme vs nike", "competitor"),
        ("cheap alternative to airpods", "competitor"),
        ("waterproof hiking boots for women", "product"),
        ("running shoes", "generic"),
        ("", "generic"),
    ],
)
def test_classify_keyword_type(text, expected):
    assert KeywordFeatureExtractor.classify_keyword_type(text) == expected


def test_vs_must_be_a_token():
    # "canvas" contains "vs" but is not a comparison query
    assert KeywordFeatureExtractor.classify_keyword_type("canvas bag") == "generic"


def test_extract_normalizes_inputs(extractor):
    f = extractor.extract("  Trail Running Shoes ", match_type=" EXACT ", bid="1.25", price_range="NaN")
    assert f.match_type == "exact"
    assert f.word_count == 3
    assert f.keyword_type == "generic"
    assert f.avg_bid == 1.25
    assert f.price_range is None
    assert f.competition_level is None


def test_extract_bad_bid_defaults(extractor):
    assert extractor.extract("shoes", bid="abc").avg_bid == 1.0
    assert extractor.extract("shoes", bid=-2).avg_bid == 1.0
    assert extractor.extract("shoes", bid=np.nan).avg_bid == 1.0
    assert extractor.extract("shoes", match_type=None).match_type == "broad"


def test_build_training_set_filters_and_derives(extractor):
    frame = pd.DataFrame([
        {"keyword_text": "red shoes", "match_type": "exact", "bid": 1.0, "clicks": 100, "orders": 5, "sales": 150.0},
        {"keyword_text": "blue shoes", "match_type": "phrase", "bid": 0.8, "clicks": 0, "orders": 0, "sales": 0.0},
        {"keyword_text": "green shoes", "match_type": "broad", "bid": 0.5, "clicks": 40, "orders": 0, "sales": 0.0},
        {"keyword_text": "acme shoes brand", "match_type": "exact", "bid": 2.0, "clicks": 10, "orders": 1,
         "sales": 40.0, "cvr": 0.2},
    ])
    samples = extractor.build_training_set(frame)

    assert len(samples) == 3
    assert samples[0].cr == pytest.approx(0.05)
    assert samples[0].cv == pytest.approx(30.0)
    assert samples[1].cv == 0.0
    # Explicit cvr column wins over orders / clicks
    assert samples[2].cr == pytest.approx(0.2)
    assert samples[2].features.keyword_type == "brand"


def test_build_training_set_empty(extractor):
    assert extractor.build_training_set(pd.DataFrame()) == []
    assert extractor.build_training_set(pd.DataFrame([{"keyword_text": "x", "clicks": 0}])) == []
