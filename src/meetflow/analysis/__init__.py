"""Meeting analysis engine -- assembly, extraction, orchestration and approval.

Takes a speaker-segmented transcript plus user-flagged conclusion
intervals, drives it through the dependency-ordered analysis stages via
the capability gateway, aggregates a MeetingAnalysisResult, and routes
AI-suggested tasks through the approval state machine. The lifecycle
controller sequences all of it per meeting.
"""
