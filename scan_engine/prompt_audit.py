"""
Prompt heuristics

Free-text checks over generation prompts: point-of-interest names, minor age
expressions, young nouns, harmful word combinations, keyword-derived tags and
the NSFW prompt audit used by the disposition step. Matching is tolerant of
common character substitutions (1 for i, 0 for o, ...) and of punctuation
between words.
"""

import html
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Pattern, Tuple

from . import wordlists

_GAP = "[^a-zA-Z0-9]*"
_BOUNDARY_START = "(?:[^a-zA-Z0-9]+|^)"
_BOUNDARY_END = "(?:[^a-zA-Z0-9]+|$)"


def normalize_text(text: Optional[str]) -> Optional[str]:
    """Decode HTML entities and strip diacritics"""
    if text is None:
        return None
    text = unicodedata.normalize("NFKD", html.unescape(text))
    return "".join(c for c in text if not unicodedata.combining(c))


def prepare_word_regex(word: str, pluralize: bool = False) -> Pattern:
    regex_str = re.sub(r"\s+", _GAP, word)
    if "[" not in word:
        regex_str = (
            regex_str
            .replace("i", "[i|l|1]")
            .replace("o", "[o|0]")
            .replace("s", "[s|z]")
            .replace("e", "[e|3]")
        )
    if pluralize:
        regex_str += "[s|z]*"
    return re.compile(_BOUNDARY_START + regex_str + _BOUNDARY_END, re.IGNORECASE)


Matcher = Callable[[str, Pattern, str], Optional[str]]


class WordMatcher:
    """Compiled word list answering which word, if any, occurs in a prompt"""

    def __init__(
        self,
        words: List[str],
        pluralize: bool = False,
        preprocessor: Optional[Callable[[str], str]] = None,
        matcher: Optional[Matcher] = None,
    ):
        self.entries = [(prepare_word_regex(word, pluralize), word) for word in words]
        self.preprocessor = preprocessor
        self.matcher = matcher

    def in_prompt(self, prompt: str) -> Optional[str]:
        prompt = prompt.strip()
        if self.preprocessor:
            prompt = self.preprocessor(prompt)
        for regex, word in self.entries:
            if self.matcher is not None:
                result = self.matcher(prompt, regex, word)
                if result is not None:
                    return result
            elif regex.search(prompt):
                return word
        return None


def in_prompt_edit(prompt: str, regex: Pattern) -> bool:
    """True when the match sits inside a prompt-editing block like ``[a|b]``"""
    match = regex.search(prompt)
    if not match:
        return False

    start = prompt.rfind("[", 0, match.start() + 1)
    end = prompt.find("]", match.start())
    if start == -1 or end == -1 or "]" in prompt[start:match.start()]:
        return False

    block = prompt[start:end]
    has_pipe = len([x for x in block.split("|") if x.strip()]) > 1
    has_colon = len([x for x in block.split(":") if x.strip()]) > 2
    return has_pipe or has_colon


def _poi_outside_edit(prompt: str, regex: Pattern, word: str) -> Optional[str]:
    if in_prompt_edit(prompt, regex):
        return None
    return word if regex.search(prompt) else None


# Minor age expressions

_AGES: List[Tuple[int, List[str]]] = [
    (17, ["seven{teen}", "sevn{teen}", "sevem{teen}", "seve{teen}", "7{teen}", "17"]),
    (16, ["six{teen}", "sicks{teen}", "sixe{teen}", "6{teen}", "16"]),
    (15, ["fif{teen}", "fiv{teen}", "five{teen}", "fife{teen}", "fivve{teen}", "5{teen}", "15"]),
    (14, ["four{teen}", "for{teen}", "fore{teen}", "foure{teen}", "4{teen}", "14"]),
    (13, ["thir{teen}", "3{teen}", "ther{teen}", "three{teen}", "tree{teen}", "thee{teen}",
          "thre{teen}", "thri{teen}", "13"]),
    (12, ["twelve", "twelv", "twelf", "2{teen}", "twel", "12"]),
    (11, ["eleven", "eleve", "elevn", "1{teen}", "elvn", "11"]),
    (10, ["ten", "tenn", "tene", "10"]),
    (9, ["nine", "nien", "nein", "niene", "9"]),
    (8, ["eight", "eigt", "eigh", "8"]),
    (7, ["seven", "sevn", "sevem", "seve", "7"]),
    (6, ["six", "sicks", "sixe", "6"]),
    (5, ["five", "fiv", "fife", "fivve", "5"]),
    (4, ["four", "for", "fore", "foure", "4"]),
    (3, ["three", "thee", "thre", "thri", "3"]),
    (2, ["two", "2"]),
    (1, ["one", "uno", "1"]),
]
_TEEN = ["teen", "ten", "tein", "tien", "tn"]
_YEARS = ["y", "yr", "yrs", "years", "year", "anos"]
_OLD = ["o", "old"]
_AGE_TEMPLATES = [
    "aged {age}",
    "age {age}",
    "age of {age}",
    "{age} age",
    "{age} {years} {old}",
    "{age} {years}",
    "{age}th birthday",
]


def _expand_ages() -> Dict[str, int]:
    lookup: Dict[str, int] = {}
    for age, matches in _AGES:
        for match in matches:
            if "{teen}" not in match:
                lookup.setdefault(match, age)
                continue
            base = match.replace("{teen}", "").strip()
            for teen in _TEEN:
                lookup.setdefault(base + teen, age)
                lookup.setdefault(base + " " + teen, age)
    return lookup


AGE_LOOKUP = _expand_ages()


def _build_age_regexes() -> List[Pattern]:
    parts = {
        "age": "|".join(AGE_LOOKUP),
        "years": "|".join(_YEARS),
        "old": "|".join(_OLD),
    }
    regexes = []
    for template in _AGE_TEMPLATES:
        regex_str = template
        for key, value in parts.items():
            regex_str = regex_str.replace("{" + key + "}", f"(?P<{key}>{value})", 1)
        regex_str = re.sub(r"\s+", _GAP, regex_str)
        regexes.append(re.compile(_BOUNDARY_START + "0*" + regex_str + _BOUNDARY_END, re.IGNORECASE))
    return regexes


AGE_REGEXES = _build_age_regexes()


def includes_minor_age(prompt: Optional[str]) -> Tuple[bool, Optional[int]]:
    """Return (found, age) for the first minor age expression in the prompt"""
    if not prompt:
        return False, None
    for regex in AGE_REGEXES:
        match = regex.search(prompt)
        if match:
            age_text = re.sub(r"[^a-z0-9]+", " ", match.group("age").lower())
            return True, AGE_LOOKUP.get(age_text)
    return False, None


# Compiled word lists

_composed_nouns = [
    adjective + r"([\s|\w]*|[^\w]+)" + noun
    for noun in wordlists.YOUNG_WORDS["partial_nouns"]
    for adjective in wordlists.YOUNG_WORDS["adjectives"]
]

NSFW_MATCHER = WordMatcher(wordlists.NSFW_WORDS)
YOUNG_NOUN_MATCHER = WordMatcher(wordlists.YOUNG_WORDS["nouns"] + _composed_nouns, pluralize=True)
NEGATIVE_YOUNG_NOUN_MATCHER = WordMatcher(wordlists.YOUNG_WORDS["negative_nouns"], pluralize=True)
POI_MATCHER = WordMatcher(
    wordlists.POI_WORDS,
    preprocessor=lambda text: re.sub(r"[^\w\s|:\[\],]", "", text),
    matcher=_poi_outside_edit,
)
PROMPT_TAG_MATCHERS = [(tag, WordMatcher(words)) for tag, words in wordlists.PROMPT_TAGS.items()]
BLOCKED_NSFW_REGEXES = [(word, prepare_word_regex(word)) for word in wordlists.BLOCKED_NSFW_WORDS]
BLOCKED_REGEXES = [(word, prepare_word_regex(word)) for word in wordlists.BLOCKED_WORDS]
HARMFUL_COMBINATIONS = [
    (kind, re.compile(pattern, re.IGNORECASE)) for kind, pattern in wordlists.HARMFUL_COMBINATIONS
]
POI_NAMES = frozenset(word.lower() for word in wordlists.POI_WORDS)


def is_poi_name(name: str) -> bool:
    return name.lower() in POI_NAMES


def get_tags_from_prompt(prompt: Optional[str]) -> List[str]:
    if not prompt:
        return []
    return [tag for tag, matcher in PROMPT_TAG_MATCHERS if matcher.in_prompt(prompt)]


def includes_nsfw(prompt: Optional[str]) -> Optional[str]:
    if not prompt:
        return None
    return NSFW_MATCHER.in_prompt(prompt)


def includes_poi(prompt: Optional[str]) -> Optional[str]:
    """Matched point-of-interest name, ignoring names inside prompt-edit blocks"""
    if not prompt:
        return None
    return POI_MATCHER.in_prompt(prompt)


def includes_minor(prompt: Optional[str], negative_prompt: Optional[str] = None) -> bool:
    if not prompt:
        return False
    if includes_minor_age(prompt)[0] or YOUNG_NOUN_MATCHER.in_prompt(prompt):
        return True
    return bool(negative_prompt and NEGATIVE_YOUNG_NOUN_MATCHER.in_prompt(negative_prompt))


def includes_harmful_combination(prompt: Optional[str]) -> Optional[str]:
    if not prompt:
        return None
    normalized = normalize_text(prompt)
    for kind, pattern in HARMFUL_COMBINATIONS:
        if pattern.search(normalized):
            return kind
    return None


def includes_inappropriate(
    prompt: Optional[str],
    negative_prompt: Optional[str] = None,
    nsfw: bool = False,
) -> Optional[str]:
    """Return ``"minor"`` or ``"poi"`` when the prompt pairs sexual content with either"""
    if not prompt:
        return None
    prompt = re.sub(r"['.\-]", "", prompt)

    combination = includes_harmful_combination(prompt)
    if combination:
        return combination

    if not nsfw and not includes_nsfw(prompt):
        return None

    if negative_prompt:
        combination = includes_harmful_combination(negative_prompt)
        if combination:
            return combination

    if includes_poi(prompt):
        return "poi"
    if includes_minor(prompt, negative_prompt):
        return "minor"
    return None


@dataclass
class AuditResult:
    success: bool
    blocked_for: List[str] = field(default_factory=list)


def audit_prompt(prompt: Optional[str], nsfw: bool) -> AuditResult:
    """Check a prompt against the block lists; NSFW content also fails on minor ages"""
    prompt = normalize_text(prompt)
    if not prompt:
        return AuditResult(success=True)

    if nsfw:
        found, age = includes_minor_age(prompt)
        if found and age is not None:
            return AuditResult(success=False, blocked_for=[f"{age} year old"])

    block_list = BLOCKED_NSFW_REGEXES if nsfw else BLOCKED_REGEXES
    blocked_for = [word for word, regex in block_list if regex.search(prompt)]
    return AuditResult(success=not blocked_for, blocked_for=blocked_for)
