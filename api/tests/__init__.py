"""
Test suite for loghound.

Provides:
- Unit tests for target resolution, time ranges, the job state machine,
  the rate governor and the result aggregator
- Orchestrator scenario tests against a scripted backend
- CloudWatch adapter tests with botocore's Stubber
- HTTP API tests
"""
