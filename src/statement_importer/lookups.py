"""Static lookup tables shared by the normalizer, parsers and categorizer.

Everything here is immutable (tuples and read-only mappings) and built once at
import time, so any number of imports can read it concurrently.
"""

from __future__ import annotations

from types import MappingProxyType

# POS terminal and payment-processor prefixes, longest first so that
# "PAYPAL *" wins over "PAYPAL*" and "SQC*" over "SQ *".
POS_PREFIXES: tuple[str, ...] = tuple(
    sorted(
        (
            "SQ *", "SQC*", "TST*", "PP*", "PAYPAL *", "PAYPAL*",
            "SP *", "SP*", "CKE*", "CHK*", "POS ", "DEBIT ",
            "PURCHASE ", "CHECKCARD ", "ACH ",
        ),
        key=len,
        reverse=True,
    )
)

# Known merchant aliases (lowercase substring) -> display name.
KNOWN_MERCHANTS = MappingProxyType(
    {
        "amzn*marketplace": "Amazon",
        "amzn*mktp": "Amazon",
        "amzn mktp": "Amazon",
        "amzn": "Amazon",
        "amazon prime": "Amazon Prime",
        "amazon.com": "Amazon",
        "wm supercenter": "Walmart",
        "wal-mart": "Walmart",
        "walmart": "Walmart",
        "target": "Target",
        "costco whse": "Costco",
        "costco": "Costco",
        "wholefds": "Whole Foods",
        "whole foods": "Whole Foods",
        "trader joe": "Trader Joe's",
        "starbucks": "Starbucks",
        "mcdonald": "McDonald's",
        "chick-fil-a": "Chick-fil-A",
        "chipotle": "Chipotle",
        "uber eats": "Uber Eats",
        "uber": "Uber",
        "lyft": "Lyft",
        "doordash": "DoorDash",
        "grubhub": "Grubhub",
        "netflix": "Netflix",
        "spotify": "Spotify",
        "apple.com/bill": "Apple",
        "google *": "Google",
        "venmo": "Venmo",
        "zelle": "Zelle",
    }
)

# Aliases ordered longest first so "uber eats" is tried before "uber".
MERCHANT_ALIASES: tuple[tuple[str, str], ...] = tuple(
    sorted(KNOWN_MERCHANTS.items(), key=lambda item: len(item[0]), reverse=True)
)

# Institution keyword (lowercase) -> display name. Multi-word and longer
# names come first so "citibank" is not reported as "citi".
INSTITUTIONS: tuple[tuple[str, str], ...] = (
    ("bank of america", "Bank of America"),
    ("american express", "American Express"),
    ("wells fargo", "Wells Fargo"),
    ("capital one", "Capital One"),
    ("td bank", "TD Bank"),
    ("us bank", "US Bank"),
    ("citibank", "Citibank"),
    ("discover", "Discover"),
    ("fidelity", "Fidelity"),
    ("vanguard", "Vanguard"),
    ("schwab", "Schwab"),
    ("chase", "Chase"),
    ("citi", "Citibank"),
    ("bofa", "Bank of America"),
    ("amex", "American Express"),
    ("usaa", "USAA"),
    ("pnc", "PNC"),
    ("ally", "Ally"),
)

# Category keywords used by the local keyword categorizer.
CATEGORY_KEYWORDS = MappingProxyType(
    {
        "Food & Dining": (
            "restaurant", "mcdonald", "starbucks", "chipotle", "subway", "pizza",
            "burger", "taco", "sushi", "coffee", "cafe", "diner", "grubhub",
            "doordash", "uber eats", "postmates", "seamless", "panera", "dunkin",
            "wendy", "chick-fil-a", "popeyes", "domino", "panda express",
            "five guys", "olive garden", "applebee", "ihop", "waffle",
        ),
        "Groceries": (
            "grocery", "supermarket", "whole foods", "trader joe", "walmart",
            "target", "costco", "kroger", "safeway", "publix", "aldi",
            "wegmans", "market", "h-e-b", "food lion", "stop & shop",
            "sprouts", "fresh market", "giant", "piggly wiggly",
        ),
        "Shopping": (
            "amazon", "ebay", "walmart.com", "target.com", "best buy", "apple",
            "nike", "adidas", "zara", "h&m", "nordstrom", "macy", "gap",
            "old navy", "ikea", "home depot", "lowe", "wayfair", "etsy",
            "shopify", "store", "shop", "mall", "retail",
        ),
        "Transportation": (
            "uber", "lyft", "taxi", "gas", "shell", "chevron", "exxon",
            "bp", "sunoco", "fuel", "parking", "toll", "transit", "metro",
            "bus", "train", "amtrak", "airline", "flight", "car wash",
            "auto", "mechanic", "tire", "jiffy lube",
        ),
        "Bills & Utilities": (
            "electric", "water", "gas bill", "internet", "cable", "phone",
            "verizon", "at&t", "tmobile", "t-mobile", "sprint", "comcast",
            "xfinity", "spectrum", "utility", "sewage", "trash", "waste",
            "insurance", "geico", "state farm", "allstate", "progressive",
            "rent", "mortgage", "hoa", "property tax",
        ),
        "Entertainment": (
            "netflix", "spotify", "hulu", "disney", "hbo", "youtube",
            "apple tv", "paramount", "peacock", "movie", "theater", "cinema",
            "concert", "ticket", "ticketmaster", "stubhub", "gaming",
            "steam", "playstation", "xbox", "nintendo", "twitch",
        ),
        "Healthcare": (
            "pharmacy", "cvs", "walgreens", "rite aid", "hospital", "doctor",
            "dental", "dentist", "optometrist", "vision", "medical",
            "health", "urgent care", "clinic", "lab", "prescription",
            "therapy", "physical therapy", "chiropractic",
        ),
        "Travel": (
            "hotel", "motel", "airbnb", "vrbo", "booking.com", "expedia",
            "kayak", "priceline", "marriott", "hilton", "hyatt", "resort",
            "cruise", "rental car", "hertz", "avis", "enterprise",
            "airport", "tsa", "luggage",
        ),
        "Education": (
            "tuition", "university", "college", "school", "textbook",
            "coursera", "udemy", "skillshare", "masterclass", "student loan",
            "education", "learning", "tutoring", "library",
        ),
        "Personal Care": (
            "salon", "barber", "spa", "massage", "nail", "beauty",
            "sephora", "ulta", "haircut", "grooming", "skincare", "gym",
            "fitness", "planet fitness", "equinox", "yoga", "peloton",
        ),
        "Income": (
            "payroll", "direct deposit", "salary", "wage", "payment received",
            "interest earned", "dividend", "refund", "reimbursement",
            "cash back", "rebate", "bonus",
        ),
        "Transfer": (
            "transfer", "zelle", "venmo", "paypal", "cash app", "wire",
            "ach", "internal transfer",
        ),
    }
)

VALID_CATEGORIES: tuple[str, ...] = (*CATEGORY_KEYWORDS, "Other")
