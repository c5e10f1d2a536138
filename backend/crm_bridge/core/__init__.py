# CRM Bridge - Core constants, errors and metrics
