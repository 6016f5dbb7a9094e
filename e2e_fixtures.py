"""Fixture users and text payloads shared by the scenario tests."""

from collections import namedtuple

FixtureUser = namedtuple("FixtureUser", "handle password")

ALICE      = FixtureUser("alice", "alice-pass-1234")
BOB        = FixtureUser("bob", "bob-pass-5678")
CAROL      = FixtureUser("carol", "carol-pass-9012")
OPERATOR   = FixtureUser("operator_e2e", "operator-pass-1234")
PROVIDER   = FixtureUser("provider_e2e", "provider-pass-5678")
RESEARCHER = FixtureUser("researcher_e2e", "researcher-pass-9012")

ROLES        = ("anon", "user", "researcher", "provider", "operator")
NODE_TYPES   = ("claim", "piece")
VISIBILITIES = ("public", "research", "provider", "instance")

QUESTION_SIMPLE = ("What are the main advantages and disadvantages of microservice "
                   "architecture compared to monolithic applications?")
ANSWER_SIMPLE   = ("Microservices offer independent deployment and scaling but introduce "
                   "distributed system complexity including network latency and data "
                   "consistency challenges.")
TAGS_AI = ["artificial-intelligence", "machine-learning", "ethics"]

TEXT_ARABIC = "ما هو تأثير الذكاء الاصطناعي على المجتمعات العربية؟"
TEXT_EMOJI  = ("The 🌍 is facing 🔥 challenges that require 🧠 solutions 🚀. How can artificial "
               "intelligence help solve climate change while maintaining economic stability?")

XSS_SCRIPT = "<script>alert('xss')</script>"
SQLI_BASIC = "'; DROP TABLE nodes; --"

# alg=none token with no signature: {"sub":"forged","handle":"forged"}
JWT_ALG_NONE = "eyJhbGciOiJub25lIiwidHlwIjoiSldUIn0.eyJzdWIiOiJmb3JnZWQiLCJoYW5kbGUiOiJmb3JnZWQifQ."
