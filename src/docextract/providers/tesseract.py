"""Tesseract OCR provider.

Decodes a page image, optionally deskews it, and runs Tesseract with
word-level data so line breaks and an overall confidence can be kept.
"""

from typing import Optional

import cv2
import numpy as np
import pytesseract
from PIL import Image

from docextract.config import settings
from docextract.errors import ProviderFatalError
from docextract.models import confidence_to_level
from docextract.providers.base import OcrResult


class TesseractOcr:
    """OcrProvider using Tesseract.

    Extracts page text line by line with an average word confidence.
    """

    def __init__(
        self,
        language: Optional[str] = None,
        psm: int = 3,
        oem: int = 3,
        config: Optional[str] = None,
        deskew: bool = True,
    ):
        """Initialize Tesseract OCR.

        Args:
            language: Tesseract language code(s), e.g., 'eng', 'eng+deu'.
            psm: Page segmentation mode (3 = fully automatic).
            oem: OCR Engine mode (3 = default, based on what's available).
            config: Additional Tesseract config string.
            deskew: Straighten the page before OCR.
        """
        self.language = language or settings.ocr_language
        self.psm = psm
        self.oem = oem
        self.config = config or ""
        self.deskew = deskew

    def _build_config(self) -> str:
        """Build Tesseract configuration string."""
        config_parts = [
            f"--psm {self.psm}",
            f"--oem {self.oem}",
        ]
        if self.config:
            config_parts.append(self.config)
        return " ".join(config_parts)

    def extract_page(self, image: bytes, page_number: int) -> OcrResult:
        """Run OCR on an encoded page image (PNG/JPEG/TIFF bytes).

        Raises:
            ProviderFatalError: If the image cannot be decoded or Tesseract
                fails.
        """
        decoded = cv2.imdecode(np.frombuffer(image, dtype=np.uint8), cv2.IMREAD_GRAYSCALE)
        if decoded is None:
            raise ProviderFatalError(f"Could not decode image for page {page_number}")
        if self.deskew:
            decoded = deskew_image(decoded)

        try:
            data = pytesseract.image_to_data(
                Image.fromarray(decoded),
                lang=self.language,
                config=self._build_config(),
                output_type=pytesseract.Output.DICT,
            )
        except pytesseract.TesseractError as exc:
            raise ProviderFatalError(f"Tesseract failed on page {page_number}: {exc}") from exc

        lines: dict[tuple[int, int, int], list[str]] = {}
        confidences = []
        for i in range(len(data["text"])):
            text = data["text"][i].strip()
            conf = float(data["conf"][i])

            # Skip empty or low-confidence noise
            if not text or conf < 0:
                continue

            confidences.append(conf / 100.0)
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(text)

        avg_confidence = sum(confidences) / len(confidences) if confidences else 0.0
        return OcrResult(
            full_text="\n".join(" ".join(words) for words in lines.values()),
            metadata={
                "page_number": page_number,
                "ocr_engine": "tesseract",
                "confidence": avg_confidence,
                "confidence_level": confidence_to_level(avg_confidence).value,
                "word_count": len(confidences),
            },
        )


def deskew_image(image: np.ndarray) -> np.ndarray:
    """Correct skew in a grayscale page image.

    Args:
        image: Grayscale image.

    Returns:
        Deskewed image.
    """
    # Text pixels are dark on a light page
    coords = np.column_stack(np.where(image < 128))

    if len(coords) < 10:
        return image

    angle = cv2.minAreaRect(coords.astype(np.float32))[-1]

    if angle < -45:
        angle = 90 + angle
    elif angle > 45:
        angle = angle - 90

    if abs(angle) <= 0.5:
        return image

    (h, w) = image.shape[:2]
    matrix = cv2.getRotationMatrix2D((w // 2, h // 2), angle, 1.0)
    return cv2.warpAffine(
        image,
        matrix,
        (w, h),
        flags=cv2.INTER_CUBIC,
        borderMode=cv2.BORDER_REPLICATE,
    )
