from enroll_sync.extraction.cli import main

if __name__ == "__main__":
    # Directories and schema are initialised by the CLI before any command runs.
    raise SystemExit(main())
