"""Security center: MFA enrolment, sessions, threat events, field encryption and compliance checks."""
