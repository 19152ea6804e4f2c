"""Word lists consumed by the prompt heuristics in ``prompt_audit``"""

# Words that mark a prompt as NSFW on their own
NSFW_WORDS = [
    "nsfw",
    "nude",
    "nudity",
    "naked",
    "topless",
    "bottomless",
    "sex",
    "porn",
    "explicit",
    "hentai",
    "nipples",
    "genitals",
    "lingerie",
    "erotic",
    "orgasm",
    "undressed",
]

# Blocked outright when the content is NSFW
BLOCKED_NSFW_WORDS = [
    "rape",
    "incest",
    "bestiality",
    "necrophilia",
    "snuff",
    "zoophilia",
    "noncon",
]

# Blocked regardless of rating
BLOCKED_WORDS = [
    "cp",
    "pedo",
    "pedophile",
]

YOUNG_WORDS = {
    "nouns": [
        "child",
        "children",
        "kid",
        "toddler",
        "infant",
        "preteen",
        "pre teen",
        "schoolgirl",
        "schoolboy",
        "loli",
        "shota",
        "underage",
        "minor",
        "elementary school",
        "middle school",
    ],
    # Combined with the adjectives below, e.g. "little girl"
    "partial_nouns": ["girl", "boy"],
    "adjectives": ["little", "young", "tiny", "small"],
    # Adult terms that indicate youth when excluded through the negative prompt
    "negative_nouns": ["adult", "mature", "woman", "milf"],
}

# Public figures whose likeness may not be used in generated content
POI_WORDS = [
    "taylor swift",
    "emma watson",
    "scarlett johansson",
    "billie eilish",
    "ariana grande",
    "selena gomez",
    "margot robbie",
    "kim kardashian",
]

# Tag name -> prompt words that imply it
PROMPT_TAGS = {
    "photorealistic": ["photorealistic", "photo realistic", "raw photo", "hyperrealistic"],
    "realistic": ["realistic", "realism"],
    "anime": ["anime", "manga"],
    "cartoon": ["cartoon", "toon"],
    "3d": ["3d render", "octane render", "blender render"],
    "painting": ["oil painting", "watercolor", "acrylic painting"],
}

# (type, pattern) pairs checked against the normalized prompt before anything else
HARMFUL_COMBINATIONS = [
    ("minor", r"\b(child|kid|toddler|preteen|loli|shota)s?\b.{0,40}\b(nude|naked|sex|porn|hentai)\b"),
    ("minor", r"\b(nude|naked|sex|porn|hentai)\b.{0,40}\b(child|kid|toddler|preteen|loli|shota)s?\b"),
    ("poi", r"\bdeep\s?fake\b.{0,40}\b(nude|naked|sex|porn)\b"),
    ("poi", r"\b(nude|naked|sex|porn)\b.{0,40}\bdeep\s?fake\b"),
]
