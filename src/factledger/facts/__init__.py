"""
Fact Ledger - couche de vérité des facts d'un deal

Ce module maintient, pour chaque deal, la vérité courante de chaque fact
affirmé par des producteurs concurrents, sans jamais écarter silencieusement
un désaccord.

Composants:
- event_log.py: EventLog (stockage append-only, transitions, version par clé)
- resolver.py: projection courante dérivée du log (pure)
- arbitration.py: ArbitrationPolicy, decide, ArbitrationEngine
- review.py: ReviewWorkflow (clôture humaine des reviews)
- ledger.py: FactLedger (interface ingestion / requêtes / review)
- schemas.py: Pydantic models (FactSubmission, FactEvent, CurrentFact, PendingReview)
- fact_keys.py, normalization.py: taxonomie des clés et égalité adaptée

Workflow:
1. Producteur soumet une valeur candidate
2. Arbitrage contre la valeur courante (accept / supersede / reject / escalade)
3. Review humaine des escalades (ACCEPT_NEW / KEEP_EXISTING / OVERRIDE)
4. Projection courante recalculée depuis le log
"""
