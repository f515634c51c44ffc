import secrets
import os
from cryptography.fernet import Fernet

# Generate secrets
fernet_key = Fernet.generate_key().decode()
ingest_key = secrets.token_urlsafe(32)

print(f"Generated TOKEN_ENCRYPTION_KEY: {fernet_key}")
print(f"Generated METRICUS_INGEST_KEY: {ingest_key}")

# Read template
template_path = ".env.template"
env_path = ".env"

if os.path.exists(template_path):
    with open(template_path, "r") as f:
        content = f.read()

    # Replace only the generated lines, keep everything else from the template
    new_lines = []
    for line in content.splitlines():
        if line.startswith("TOKEN_ENCRYPTION_KEY="):
            new_lines.append(f"TOKEN_ENCRYPTION_KEY={fernet_key}")
        elif line.startswith("METRICUS_INGEST_KEY="):
            new_lines.append(f"METRICUS_INGEST_KEY={ingest_key}")
        else:
            new_lines.append(line)

    with open(env_path, "w") as f:
        f.write("\n".join(new_lines) + "\n")

    print(f"Successfully wrote to {env_path}")

else:
    print(f"Error: {template_path} not found. Please ensure it exists.")
