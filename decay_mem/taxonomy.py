# decay_mem/taxonomy.py

CATEGORIES: list[str] = [
    "Boss Profile",
    "Personality & Traits",
    "Goals & Aspirations",
    "Habits & Routines",
    "Skills & Expertise",
    "Friends & Contacts",
    "Family Members",
    "Business Associates",
    "Active Projects",
    "Business Ideas & Ventures",
    "Food & Drink Preferences",
    "Technology & Tools",
    "Entertainment Preferences",
    "Work Style & Environment",
    "Communication Style",
    "Travel & Places",
    "Key Dates & Milestones",
    "Decisions & Commitments",
    "Pending Action Items",
    "Notes & Miscellaneous",
]

FALLBACK_CATEGORY = "Notes & Miscellaneous"

# per-day retention factor, closer to 1 decays slower
DEFAULT_DECAY_RATES: dict[str, float] = {
    "Boss Profile": 0.98,
    "Personality & Traits": 0.97,
    "Goals & Aspirations": 0.96,
    "Habits & Routines": 0.95,
    "Skills & Expertise": 0.97,
    "Friends & Contacts": 0.95,
    "Family Members": 0.98,
    "Business Associates": 0.94,
    "Active Projects": 0.93,
    "Business Ideas & Ventures": 0.90,
    "Food & Drink Preferences": 0.94,
    "Technology & Tools": 0.92,
    "Entertainment Preferences": 0.90,
    "Work Style & Environment": 0.96,
    "Communication Style": 0.96,
    "Travel & Places": 0.94,
    "Key Dates & Milestones": 0.92,
    "Decisions & Commitments": 0.93,
    "Pending Action Items": 0.91,
    "Notes & Miscellaneous": 0.88,
}

DEFAULT_IMPORTANCE_BY_CATEGORY: dict[str, float] = {
    "Boss Profile": 100,
    "Personality & Traits": 90,
    "Goals & Aspirations": 95,
    "Habits & Routines": 85,
    "Skills & Expertise": 80,
    "Friends & Contacts": 75,
    "Family Members": 85,
    "Business Associates": 70,
    "Active Projects": 90,
    "Business Ideas & Ventures": 80,
    "Food & Drink Preferences": 60,
    "Technology & Tools": 65,
    "Entertainment Preferences": 55,
    "Work Style & Environment": 80,
    "Communication Style": 75,
    "Travel & Places": 60,
    "Key Dates & Milestones": 85,
    "Decisions & Commitments": 80,
    "Pending Action Items": 95,
    "Notes & Miscellaneous": 50,
}


def normalize_category(value: str | None) -> str:
    """
    Map a free-form category string onto the taxonomy.

    Loose on purpose: the first category (in CATEGORIES order) whose name
    contains the input, case-insensitively, wins. "project" -> "Active Projects",
    "pref" -> "Food & Drink Preferences". Anything else, including empty
    input, lands in FALLBACK_CATEGORY. Never raises.
    """
    if not value:
        return FALLBACK_CATEGORY

    needle = value.lower()
    for category in CATEGORIES:
        if needle in category.lower():
            return category
    return FALLBACK_CATEGORY


def category_defaults(category: str) -> tuple[float, float]:
    """Return (base_importance, decay_rate) for a known category."""
    return DEFAULT_IMPORTANCE_BY_CATEGORY[category], DEFAULT_DECAY_RATES[category]
