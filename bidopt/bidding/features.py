import logging
from typing import List, Optional

import pandas as pd

from bidopt.bidding.schema import KeywordFeatures, TrainingSample

# Configure logging
logger = logging.getLogger(__name__)

BRAND_MARKERS = ("brand", "official")
COMPETITOR_MARKERS = ("vs", "alternative")
PRODUCT_MIN_WORDS = 4


class KeywordFeatureExtractor:
    """
    Turns keyword rows into `KeywordFeatures` for the CR/CV trees.
    Handles text normalization, keyword-type classification and
    DataFrame-based training-set construction.
    """

    @staticmethod
    def _norm(val: object) -> Optional[str]:
        """Normalize categorical inputs; 'NaN', 'null' and empty strings become None."""
        if val is None:
            return None
        s = str(val).strip().lower()
        if not s or s in ("nan", "null", "none"):
            return None
        return s

    @staticmethod
    def word_count(text: str) -> int:
        return len(str(text or "").split())

    @staticmethod
    def classify_keyword_type(text: str, word_count: int = None) -> str:
        """
        brand > competitor > product > generic.
        Product keywords are long-tail queries of four or more words.
        """
        lowered = str(text or "").lower()
        tokens = lowered.split()
        if word_count is None:
            word_count = len(tokens)

        if any(marker in lowered for marker in BRAND_MARKERS):
            return "brand"
        if "alternative" in lowered or "vs" in tokens or "vs." in tokens:
            return "competitor"
        if word_count >= PRODUCT_MIN_WORDS:
            return "product"
        return "generic"

    def extract(
        self,
        keyword_text: str,
        match_type: str = "broad",
        bid: float = None,
        price_range: str = None,
        competition_level: str = None,
    ) -> KeywordFeatures:
        wc = self.word_count(keyword_text)
        try:
            avg_bid = float(bid) if bid is not None else 1.0
        except (TypeError, ValueError):
            avg_bid = 1.0
        if pd.isna(avg_bid) or avg_bid <= 0:
            avg_bid = 1.0

        return KeywordFeatures(
            match_type=self._norm(match_type) or "broad",
            word_count=wc,
            keyword_type=self.classify_keyword_type(keyword_text, wc),
            avg_bid=avg_bid,
            price_range=self._norm(price_range),
            competition_level=self._norm(competition_level),
        )

    def extract_frame(self, frame: pd.DataFrame) -> List[KeywordFeatures]:
        """Features for every row of a keyword DataFrame (keyword_text, match_type, bid, ...)."""
        return [
            self.extract(
                row.get("keyword_text", ""),
                row.get("match_type", "broad"),
                row.get("bid"),
                row.get("price_range"),
                row.get("competition_level"),
            )
            for row in frame.to_dict("records")
        ]

    def build_training_set(self, frame: pd.DataFrame) -> List[TrainingSample]:
        """
        Build CR/CV training samples from keyword rows.

        Only click-bearing rows are used. CR is the row's `cvr` column when
        present, else orders/clicks; CV is sales/orders, zero without orders.
        """
        if frame.empty:
            return []

        df = frame.copy()
        for col in ("clicks", "orders", "sales"):
            if col not in df.columns:
                df[col] = 0
            df[col] = pd.to_numeric(df[col], errors="coerce").fillna(0)

        df = df[df["clicks"] > 0]
        if df.empty:
            return []

        if "cvr" in df.columns:
            df["cr"] = pd.to_numeric(df["cvr"], errors="coerce").fillna(df["orders"] / df["clicks"])
        else:
            df["cr"] = df["orders"] / df["clicks"]
        df["cv"] = (df["sales"] / df["orders"].where(df["orders"] > 0)).fillna(0.0)

        features = self.extract_frame(df)
        samples = [
            TrainingSample(features=f, cr=float(cr), cv=float(cv))
            for f, cr, cv in zip(features, df["cr"], df["cv"])
        ]
        logger.debug(f"Built {len(samples)} training samples from {len(frame)} keyword rows")
        return samples
