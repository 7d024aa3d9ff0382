from moxie_control.main import main

raise SystemExit(main())
