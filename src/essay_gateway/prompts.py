"""Prompt construction for narrative essays.

Three full reference essays are loaded from samples.txt next to this module
and appended to every prompt.
"""

from pathlib import Path

_SAMPLES_PATH = Path(__file__).parent / "samples.txt"

STRUCTURES = ("classic", "threeline")

with open(_SAMPLES_PATH, encoding="utf-8") as f:
    SAMPLE_ESSAYS = f.read().strip()

_CORE = {
    "classic": "幫我創作一篇{word_count}字 文學性高的DSE敘事散文，題目為「{topic}」。",
    "threeline": "幫我創作一篇{word_count}字 文學性高的DSE敘事散文，要用三線散敘寫作，題目為「{topic}」。",
}

_RULES = """請嚴格模仿並參考以下範文的風格、深度和技巧進行創作。
最終輸出必須為一篇完整的純文字文章。絕不允許使用任何Markdown格式（如標題符號 #、粗體 **、列表 - * 等）。
絕不允許在文章前後或內部包含任何思考過程、解釋、標籤或非文章內容的文字。直接開始寫作即可。"""


def build_prompt(
    topic: str,
    word_count: int,
    structure: str,
    guidelines: str | None = None,
    samples: str = SAMPLE_ESSAYS,
) -> str:
    """Full prompt text for one essay. structure must be one of STRUCTURES."""
    if structure not in _CORE:
        raise ValueError(f"unknown structure: {structure!r}")
    instruction = _CORE[structure].format(word_count=word_count, topic=topic)
    if guidelines:
        instruction += f"\n\n[創作指引]\n{guidelines}"
    return f"[最終指令]\n{instruction}\n{_RULES}\n\n{samples}\n"
