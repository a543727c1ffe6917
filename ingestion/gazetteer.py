import re

# Explicit borough names and local nicknames. Checked before the
# neighborhood gazetteer.
BOROUGH_KEYWORDS = [
    ("Brooklyn", [r"brooklyn", r"\bbk\b"]),
    ("Queens", [r"queens", r"long island city", r"\blic\b"]),
    ("Bronx", [r"bronx", r"\bbx\b"]),
    ("Staten Island", [r"staten island", r"\bsi\b"]),
    ("Manhattan", [r"manhattan", r"midtown", r"uptown", r"downtown"]),
]

# Fallback when nothing more specific matched.
NYC_FALLBACK = [r"\bnyc\b", r"new york,?\s*ny"]

NEIGHBORHOODS = {
    "Manhattan": [
        "Upper East Side", "Upper West Side", "Midtown", "Chelsea",
        "Greenwich Village", "East Village", "West Village", "SoHo", "Tribeca",
        "Financial District", "Lower East Side", "Harlem", "East Harlem",
        "Washington Heights", "Inwood", "Murray Hill", "Gramercy", "Flatiron",
        "NoHo", "Nolita", "Chinatown", "Little Italy", "Battery Park City",
        "Hells Kitchen", "Hell's Kitchen", "Kips Bay", "Sutton Place",
        "Yorkville", "Lenox Hill", "Carnegie Hill", "Manhattan Valley",
        "Morningside Heights", "Hudson Yards", "NoMad", "Two Bridges",
    ],
    "Brooklyn": [
        "Williamsburg", "Bushwick", "Bed-Stuy", "Bedford-Stuyvesant",
        "Crown Heights", "Park Slope", "DUMBO", "Brooklyn Heights",
        "Greenpoint", "Prospect Heights", "Fort Greene", "Clinton Hill",
        "Cobble Hill", "Carroll Gardens", "Red Hook", "Sunset Park",
        "Bay Ridge", "Flatbush", "Prospect Lefferts Gardens", "Ditmas Park",
        "Boerum Hill", "Gowanus", "Windsor Terrace", "Kensington",
        "Bensonhurst", "Sheepshead Bay", "Brighton Beach", "Coney Island",
        "Gravesend",
    ],
    "Queens": [
        "Astoria", "Long Island City", "Sunnyside", "Woodside",
        "Jackson Heights", "Flushing", "Forest Hills", "Rego Park",
        "Ridgewood", "Elmhurst", "Corona", "Bayside", "Jamaica",
        "Kew Gardens", "Woodhaven", "Ozone Park",
    ],
    "Bronx": [
        "South Bronx", "Mott Haven", "Hunts Point", "Fordham", "Riverdale",
        "Kingsbridge", "Morris Park", "Pelham Bay", "Throggs Neck",
        "Parkchester",
    ],
    "Staten Island": [
        "St. George", "Tompkinsville", "Stapleton", "Great Kills",
    ],
}

# (lowercased name, display name, borough) in gazetteer order
_GAZETTEER = [
    (name.lower(), name, borough)
    for borough, names in NEIGHBORHOODS.items()
    for name in names
]


def _find_neighborhood(text):
    lower = text.lower()
    best = None
    for key, name, borough in _GAZETTEER:
        if key in lower and (best is None or len(key) > len(best[0])):
            best = (key, name, borough)
    return best


def infer_neighborhood(address):
    """
    Match a normalized address against the fixed neighborhood gazetteer.

    The longest matching name wins; among equally long names the first in
    gazetteer order wins. Plain substring matching, no fuzzy matching.

    Args:
        address (str): Address or free text to scan

    Returns:
        str or None: Display name of the neighborhood, or None.
    """
    if not address:
        return None
    hit = _find_neighborhood(address)
    return hit[1] if hit else None


def infer_borough(text):
    """
    Infer the NYC borough for an address, neighborhood name or title.

    Resolution order:
        1. Borough keyword table (explicit names and nicknames)
        2. Neighborhood gazetteer (borough of the longest matching name)
        3. Generic "New York, NY" / "NYC" mentions -> Manhattan

    Returns:
        str or None: Borough name, or None when nothing matched.
    """
    if not text:
        return None
    for borough, patterns in BOROUGH_KEYWORDS:
        for pattern in patterns:
            if re.search(pattern, text, re.IGNORECASE):
                return borough
    hit = _find_neighborhood(text)
    if hit:
        return hit[2]
    for pattern in NYC_FALLBACK:
        if re.search(pattern, text, re.IGNORECASE):
            return "Manhattan"
    return None
