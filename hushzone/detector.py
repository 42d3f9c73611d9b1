"""Case-insensitive whole-word matching against the moderation term set."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Pattern

DEFAULT_TERMS: tuple[str, ...] = (
    # leagues and sports
    "football", "soccer", "basketball", "baseball", "hockey", "tennis",
    "golf", "cricket", "rugby", "volleyball", "boxing", "wrestling",
    "mma", "ufc", "nfl", "nba", "mlb", "nhl", "fifa",
    # general phrases
    "game", "match", "tournament", "championship", "playoffs", "season",
    "score", "team", "player", "coach", "referee", "stadium",
    "touchdown", "goal", "home run", "slam dunk", "hat trick",
    # teams and athletes
    "lakers", "yankees", "cowboys", "patriots", "warriors", "celtics",
    "red sox", "manchester united", "barcelona", "real madrid",
    "lebron", "brady", "messi", "ronaldo", "mahomes", "curry",
    # events and media
    "super bowl", "world cup", "olympics", "world series", "finals",
    "draft", "espn", "sports center",
    # american football
    "quarterback", "qb", "running back", "rb", "wide receiver", "wr",
    "tight end", "te", "offensive line", "defensive line", "linebacker",
    "cornerback", "cb", "safety", "free safety", "strong safety",
    "kickoff", "punt", "field goal", "extra point", "two point conversion",
    "first down", "fourth down", "red zone", "end zone", "line of scrimmage",
    "snap", "blitz", "sack", "interception", "fumble", "tackle",
    "pass", "rush", "reception", "yard", "yards", "offensive coordinator",
    "defensive coordinator", "head coach", "play action", "screen pass",
    "hail mary", "onside kick", "touchback", "holding", "offsides",
    "pass interference", "roughing the passer", "helmet to helmet",
    "division", "conference", "afc", "nfc", "wild card", "pro bowl",
    # broncos
    "russell wilson", "russ wilson", "bo nix", "jarrett stidham",
    "javonte williams", "jaleel mclaughlin", "samaje perine",
    "courtland sutton", "jerry jeudy", "tim patrick", "marvin mims",
    "adam trautman", "greg dulcich", "garett bolles", "mike mcglinchey",
    "lloyd cushenberry", "quinn meinerz", "ben powers",
    "patrick surtain", "pat surtain", "patrick surtain ii",
    "justin simmons", "kareem jackson", "josey jewell", "alex singleton",
    "jonathon cooper", "baron browning", "nik bonitto", "dre mont jones",
    "zach allen", "riley moss", "caden sterns", "p j locke",
    "sean payton", "vance joseph",
    "john elway", "peyton manning", "von miller", "demaryius thomas",
    "terrell davis", "shannon sharpe", "steve atwater", "champ bailey",
    "rod smith", "clinton portis", "bradley chubb",
    # seahawks
    "geno smith", "drew lock", "kenneth walker", "kenneth walker iii",
    "zach charbonnet", "dk metcalf", "tyler lockett", "jaxon smith njigba",
    "noah fant", "will dissly", "colby parkinson", "charles cross",
    "abraham lucas", "damien lewis", "evan brown", "phil haynes",
    "devon witherspoon", "tariq woolen", "riq woolen", "coby bryant",
    "jamal adams", "julian love", "quandre diggs", "bobby wagner",
    "jordyn brooks", "devin bush", "boye mafe",
    "jarran reed", "leonard williams", "derick hall", "michael jackson",
    "mike macdonald", "ryan grubb",
    "marshawn lynch", "beast mode", "richard sherman",
    "kam chancellor", "earl thomas", "doug baldwin", "steve largent",
    "walter jones", "cortez kennedy", "shaun alexander", "matt hasselbeck",
    "pete carroll", "legion of boom", "sea hawks", "12th man",
    # nfl teams
    "broncos", "seahawks", "raiders", "chargers", "chiefs",
    "ravens", "steelers", "browns", "bengals", "texans",
    "colts", "jaguars", "titans", "bills", "dolphins",
    "jets", "eagles", "giants", "commanders", "washington",
    "packers", "bears", "lions", "vikings", "falcons",
    "panthers", "saints", "buccaneers", "bucs", "cardinals",
    "49ers", "niners", "rams", "arizona", "san francisco",
)


@dataclass(frozen=True)
class Detection:
    matched: bool
    terms: List[str] = field(default_factory=list)


def normalize_term(term: str) -> str:
    return " ".join(str(term).lower().split())


def _compile(term: str) -> Pattern[str]:
    # internal whitespace in a phrase matches any run of spaces
    body = r"\s+".join(re.escape(word) for word in term.split())
    return re.compile(rf"\b{body}\b", re.IGNORECASE)


class KeywordDetector:
    """Mutable term set; ``detect`` reports matches in insertion order."""

    def __init__(self, terms: Optional[Iterable[str]] = None) -> None:
        self._patterns: Dict[str, Pattern[str]] = {}
        for term in DEFAULT_TERMS if terms is None else terms:
            self.add_term(term)

    @classmethod
    def from_config(cls, cfg: Mapping[str, Any]) -> "KeywordDetector":
        section = cfg.get("detector", {}) if isinstance(cfg, Mapping) else {}
        detector = cls()
        for term in section.get("extra_terms") or []:
            detector.add_term(term)
        for term in section.get("removed_terms") or []:
            detector.remove_term(term)
        return detector

    def add_term(self, term: str) -> bool:
        key = normalize_term(term)
        if not key or key in self._patterns:
            return False
        self._patterns[key] = _compile(key)
        return True

    def remove_term(self, term: str) -> bool:
        return self._patterns.pop(normalize_term(term), None) is not None

    def terms(self) -> List[str]:
        return list(self._patterns)

    def __contains__(self, term: object) -> bool:
        return isinstance(term, str) and normalize_term(term) in self._patterns

    def __len__(self) -> int:
        return len(self._patterns)

    def detect(self, text: str) -> Detection:
        if not text or not text.strip():
            return Detection(False, [])
        found = [term for term, pattern in self._patterns.items() if pattern.search(text)]
        return Detection(bool(found), found)
