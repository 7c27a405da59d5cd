"""
로컬 처리기용 CPU-bound 이미지 연산.
모든 연산 함수는 PIL.Image를 받아서 PIL.Image를 반환한다.

plan()은 자유 형식 지시문에서 키워드를 찾아 적용할 연산 목록을 만든다.
실제 AI 모델 대신 개발/테스트 환경에서 파이프라인을 끝까지 돌리기 위한 것이다.
"""

import re

from PIL import Image, ImageDraw, ImageEnhance, ImageFilter, ImageFont, ImageOps

MAX_EDGE = 4096


def resize(image: Image.Image, width: int, height: int) -> Image.Image:
    return image.resize((width, height), Image.LANCZOS)


def fit(image: Image.Image, max_edge: int = 1024) -> Image.Image:
    """긴 변이 max_edge를 넘지 않게 비율을 유지하며 줄인다."""
    copy = image.copy()
    copy.thumbnail((max_edge, max_edge), Image.LANCZOS)
    return copy


def blur(image: Image.Image, radius: int = 5) -> Image.Image:
    return image.filter(ImageFilter.GaussianBlur(radius=radius))


def sharpen(image: Image.Image) -> Image.Image:
    return image.filter(ImageFilter.SHARPEN)


def grayscale(image: Image.Image) -> Image.Image:
    return image.convert("L").convert("RGB")


def rotate(image: Image.Image, degrees: int = 90) -> Image.Image:
    return image.rotate(degrees, expand=True)


def brighten(image: Image.Image, factor: float = 1.2) -> Image.Image:
    return ImageEnhance.Brightness(image).enhance(factor)


def enhance(image: Image.Image, contrast: float = 1.15, color: float = 1.1) -> Image.Image:
    """자동 대비 + 채도 보정 + 샤픈. 지시문에 아는 키워드가 없을 때의 기본 처리."""
    result = ImageOps.autocontrast(image, cutoff=1)
    result = ImageEnhance.Contrast(result).enhance(contrast)
    result = ImageEnhance.Color(result).enhance(color)
    return result.filter(ImageFilter.SHARPEN)


def white_background(image: Image.Image, threshold: int = 235) -> Image.Image:
    """밝은 배경 픽셀을 순백색으로 밀어낸다 (제품 사진 배경 정리 흉내)."""
    gray = image.convert("L")
    mask = gray.point(lambda p: 255 if p >= threshold else 0)
    white = Image.new("RGB", image.size, (255, 255, 255))
    return Image.composite(white, image, mask)


def watermark(image: Image.Image, text: str = "batchflow") -> Image.Image:
    overlay = image.copy()
    draw = ImageDraw.Draw(overlay)

    try:
        font = ImageFont.truetype("/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf", 36)
    except OSError:
        font = ImageFont.load_default(size=36)

    bbox = draw.textbbox((0, 0), text, font=font)
    text_w = bbox[2] - bbox[0]
    text_h = bbox[3] - bbox[1]

    x = max(image.width - text_w - 20, 0)
    y = max(image.height - text_h - 20, 0)

    draw.text((x, y), text, fill=(255, 255, 255), font=font)
    return overlay


OPERATIONS = {
    "resize": resize,
    "fit": fit,
    "blur": blur,
    "sharpen": sharpen,
    "grayscale": grayscale,
    "rotate": rotate,
    "brighten": brighten,
    "enhance": enhance,
    "white_background": white_background,
    "watermark": watermark,
}

# 지시문 키워드 -> 연산 이름
_KEYWORDS: list[tuple[re.Pattern, str]] = [
    (re.compile(r"grayscale|greyscale|black and white|흑백"), "grayscale"),
    (re.compile(r"blur|soften|흐리"), "blur"),
    (re.compile(r"sharpen|crisp|선명"), "sharpen"),
    (re.compile(r"bright|lighten|밝"), "brighten"),
    (re.compile(r"white background|background|배경"), "white_background"),
    (re.compile(r"rotate|회전"), "rotate"),
    (re.compile(r"watermark|워터마크"), "watermark"),
    (re.compile(r"enhance|improve|color|보정|개선"), "enhance"),
]


def plan(instruction: str) -> list[str]:
    """지시문을 연산 이름 목록으로 바꾼다. 아는 키워드가 없으면 ["enhance"]."""
    text = instruction.lower()
    steps = [name for pattern, name in _KEYWORDS if pattern.search(text)]
    return steps or ["enhance"]


def apply(image: Image.Image, instruction: str) -> Image.Image:
    result = image.convert("RGB")
    if max(result.size) > MAX_EDGE:
        result = fit(result, MAX_EDGE)
    for name in plan(instruction):
        result = OPERATIONS[name](result)
    return result
