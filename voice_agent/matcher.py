"""本地兜底匹配：不依赖网络的规则 + 打分"""

import logging
import re
from typing import Dict, List, Optional, Tuple

from .context import ROUTES
from .models import ActionDirective, CommandRequest, ElementDescriptor, Snapshot
from .perception import find_search_input

logger = logging.getLogger(__name__)

# 经验值，可按需调整
ACCEPT_THRESHOLD = 15
WORD_RETRY_THRESHOLD = 20
WORD_OVERLAP_MAX = 50
LONG_LABEL_LENGTH = 50

FILLER_RE = re.compile(r"\b(uh|um|er|ah|like|you know)\b", re.IGNORECASE)
CLICK_VERB_RE = re.compile(r"\b(click|press|tap|hit|select|choose|pick)\s+(on\s+|the\s+)?")
HELP_RE = re.compile(r"\b(help|what can i do|what's here|assist)\b")
BACK_RE = re.compile(r"\b(go back|back|previous page|return)\b")
PREVIOUS_LESSON_RE = re.compile(r"\b(previous lesson)\b")
SCROLL_RE = re.compile(r"\bscroll\s*(up|down|top|bottom)\b")
THEME_RE = re.compile(r"\b(dark mode|light mode|toggle theme|switch theme)\b")
SEARCH_RE = re.compile(r"\b(?:search|find|look for)\s+(?:for\s+)?(.+)")

NAVIGATION_RULES: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"\b(go to |navigate to |open )?(home|landing)\b"), "/"),
    (re.compile(r"\b(go to |navigate to |open )?explore\b"), "/explore"),
    (re.compile(r"\b(go to |navigate to |open )?(sign ?in|log ?in|login)\b"), "/login"),
    (re.compile(r"\b(go to |navigate to |open )?my ?courses\b"), "/my-courses"),
    (re.compile(r"\b(go to |navigate to |open )?dashboard\b"), "/courses"),
    (re.compile(r"\b(go to |navigate to |open )?reporting\b"), "/reporting"),
    (re.compile(r"\b(go to |navigate to |open )?settings\b"), "/settings"),
]


def normalize_command(raw: str) -> str:
    """小写、去掉语气词、合并空白"""
    text = FILLER_RE.sub("", raw.lower())
    return " ".join(text.split())


# 匹配档位，越大越优先；同档内才比较加减分
TIER_EXACT_TEXT = 7
TIER_EXACT_LABEL = 6
TIER_PREFIX = 5
TIER_TEXT_CONTAINS = 4
TIER_LABEL_CONTAINS = 3
TIER_PLACEHOLDER = 2
TIER_LINK = 1
TIER_WORDS = 0

TIER_BASE = {
    TIER_EXACT_TEXT: 100,
    TIER_EXACT_LABEL: 95,
    TIER_PREFIX: 80,
    TIER_TEXT_CONTAINS: 60,
    TIER_LABEL_CONTAINS: 55,
    TIER_PLACEHOLDER: 40,
    TIER_LINK: 30,
}


def match_tier(el: ElementDescriptor, target: str) -> int:
    t = target.lower()
    text = el.text.lower()
    label = el.accessible_label.lower()

    if text == t:
        return TIER_EXACT_TEXT
    if label == t:
        return TIER_EXACT_LABEL
    if text.startswith(t) or (label and label.startswith(t)):
        return TIER_PREFIX
    if t in text:
        return TIER_TEXT_CONTAINS
    if t in label:
        return TIER_LABEL_CONTAINS
    if t in el.placeholder.lower():
        return TIER_PLACEHOLDER
    if t in el.link_target.lower():
        return TIER_LINK
    return TIER_WORDS


def score_element(el: ElementDescriptor, target: str) -> float:
    t = target.lower()
    text = el.text.lower()
    label = el.accessible_label.lower()

    tier = match_tier(el, t)
    if tier != TIER_WORDS:
        score = float(TIER_BASE[tier])
    else:
        score = 0.0
        target_words = t.split()
        el_words = f"{text} {label}".split()
        matches = 0
        for tw in target_words:
            if len(tw) < 2:
                continue
            if any(tw in ew or ew in tw for ew in el_words):
                matches += 1
        if matches and target_words:
            score += matches / len(target_words) * WORD_OVERLAP_MAX

    if el.tag == "button" or el.role == "button":
        score += 10
    if el.tag == "a":
        score += 8
    if el.is_visible:
        score += 5
    if len(text) > LONG_LABEL_LENGTH:
        score -= 10
    return score


def best_match(target: str, snapshot: Snapshot) -> Tuple[Optional[ElementDescriptor], float]:
    """
    整句打分，分数过低时再逐词打分，取两轮中最好的一个。
    先比匹配档位再比分数：加分项只在同一档位内起作用，
    不会让前缀匹配压过精确匹配。
    """
    best: Optional[ElementDescriptor] = None
    best_key: Tuple[int, float] = (-1, 0.0)

    def consider(el: ElementDescriptor, t: str) -> None:
        nonlocal best, best_key
        s = score_element(el, t)
        if s <= 0:
            return
        key = (match_tier(el, t), s)
        if key > best_key:
            best, best_key = el, key

    for el in snapshot:
        consider(el, target)

    if best_key[1] < WORD_RETRY_THRESHOLD:
        for word in (w for w in target.split() if len(w) > 2):
            for el in snapshot:
                consider(el, word)

    return best, best_key[1]


class LocalMatcher:
    """兜底匹配模块：远程解释器不可用时把命令解析为动作"""

    def __init__(self, routes: Optional[Dict[str, str]] = None,
                 navigation_rules: Optional[List[Tuple[re.Pattern, str]]] = None):
        self.routes = routes if routes is not None else ROUTES
        self.navigation_rules = navigation_rules if navigation_rules is not None else NAVIGATION_RULES

    def resolve(self, request: CommandRequest, snapshot: Snapshot) -> ActionDirective:
        text = normalize_command(request.raw_text)
        if not text:
            return ActionDirective(action="none", explanation="I didn't catch a command. Try again.", confidence=0.0)

        directive = self._match_pattern(text, snapshot)
        if directive is not None:
            logger.info(f"✓ 规则命中: {directive.action}")
            return directive

        target = CLICK_VERB_RE.sub("", text).strip() or text
        el, score = best_match(target, snapshot)
        if el is not None and score >= ACCEPT_THRESHOLD:
            confidence = min(score / 100, 1.0)
            logger.info(f"✓ 本地匹配 [{el.index}] {el.label} (score={score:.1f})")
            return ActionDirective(
                action="click",
                element_index=el.index,
                explanation=f'Clicking "{el.label}" (local match, {round(confidence * 100)}%).',
                confidence=confidence,
            )

        logger.info(f"❌ 本地未匹配: {target!r} (best={score:.1f})")
        return ActionDirective(
            action="none",
            explanation=f'Sorry, I couldn\'t find "{target}" on this page. Try "help" to see what\'s available.',
            confidence=0.0,
        )

    def _match_pattern(self, text: str, snapshot: Snapshot) -> Optional[ActionDirective]:
        if HELP_RE.search(text):
            return ActionDirective(action="help", explanation="Here is what you can do.", confidence=0.95)

        if BACK_RE.search(text) and not PREVIOUS_LESSON_RE.search(text):
            return ActionDirective(action="go_back", explanation="Going back to the previous page.", confidence=0.9)

        if SCROLL_RE.search(text):
            direction = "up" if ("up" in text or "top" in text) else "down"
            return ActionDirective(
                action="scroll", direction=direction, explanation=f"Scrolling {direction}.", confidence=0.9
            )

        if THEME_RE.search(text):
            return ActionDirective(action="toggle_theme", explanation="Toggling theme.", confidence=0.9)

        search = SEARCH_RE.search(text)
        if search:
            query = search.group(1).strip()
            field = find_search_input(snapshot)
            # 没有搜索框时继续尝试导航和点击
            if field is not None:
                return ActionDirective(
                    action="search",
                    element_index=field.index,
                    query=query,
                    explanation=f'Searching for "{query}".',
                    confidence=0.85,
                )

        for pattern, route in self.navigation_rules:
            if route in self.routes and pattern.search(text):
                return ActionDirective(
                    action="navigate", route=route, explanation=f"Navigating to {route}.", confidence=0.9
                )

        return None
